"""Streaming chat: request models, stream coordination, continuation, HTTP router."""
