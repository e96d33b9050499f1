# core/__init__.py
"""
Conversation lifecycle orchestration and task progress tracking
"""
