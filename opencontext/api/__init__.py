"""
Admin HTTP API.
"""
