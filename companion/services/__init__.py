"""
External service adapters (speech synthesis).
"""
