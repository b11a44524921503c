"""Caller-facing tool surface shared by the STDIO and SSE transports."""
