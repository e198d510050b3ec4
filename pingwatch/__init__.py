"""pingwatch: live ICMP ping monitoring streamed to a subscriber."""
