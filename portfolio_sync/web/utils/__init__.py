"""
Web utilities package.
"""
