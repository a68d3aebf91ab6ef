"""Conversational workflow engine for support tickets."""
