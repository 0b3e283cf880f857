"""Dead-letter capture and bounded retry for deliveries that cannot be processed."""
