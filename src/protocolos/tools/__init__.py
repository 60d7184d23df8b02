"""Shared tools: crypto primitives, cURL parsing, placeholders, sanitization."""
