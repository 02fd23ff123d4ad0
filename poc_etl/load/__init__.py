"""Document store access and batched idempotent loading."""
