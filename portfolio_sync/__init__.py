"""
Loan-portfolio risk and urgency scoring with spreadsheet-to-SQL sync.
"""

__version__ = '1.0.0'
