"""
Services module for backend business logic
"""
