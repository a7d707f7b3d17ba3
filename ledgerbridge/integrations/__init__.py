"""Provider REST clients that run through ApiCallWrapper."""
