"""screentimed - daily screen time tracking with limit alerts."""
