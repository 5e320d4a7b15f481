"""
Utilities module:
- Logging configuration
- Seed handling for randomized stages
"""
