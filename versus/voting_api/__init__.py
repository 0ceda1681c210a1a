"""HTTP API for tests, direct votes, vote sessions and results."""
