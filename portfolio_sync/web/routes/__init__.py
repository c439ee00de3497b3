"""
Web routes package.
"""
