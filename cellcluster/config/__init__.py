"""
Configuration module: environment settings and pipeline parameters.
"""
