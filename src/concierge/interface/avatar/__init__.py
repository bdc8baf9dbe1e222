"""Talking-avatar media session and speech-text preparation."""
