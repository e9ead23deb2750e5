"""Runtime harness: the turn loop, the safety guard and retry policy."""
