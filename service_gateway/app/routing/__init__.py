"""Request parsing, response envelopes and the request router."""
