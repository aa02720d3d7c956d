"""Query cache, invalidation router and mutation coordinator."""
