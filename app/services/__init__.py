"""
Services package.
Contains the reconciliation logic separated from routes.
"""
