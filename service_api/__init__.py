"""
PTO Connect API service.
"""
