"""
Accounting and quota enforcement for metered text rewriting.
"""
