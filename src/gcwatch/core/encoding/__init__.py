"""Encoders for query responses, sink payloads and checkpoints."""
