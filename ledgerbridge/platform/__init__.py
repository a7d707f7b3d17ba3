"""Platform-wide concerns: error shapes and the error middleware."""
