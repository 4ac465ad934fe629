"""Remote match services: transitions, locks, change feed, rule engines and the expiry sweep."""
