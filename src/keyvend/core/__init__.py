"""Core enums, the order state machine and callback payloads."""
