# services/__init__.py
"""
Services package for the conversation simulator
Storage, messaging platform, LLM and background sweep integrations
"""
