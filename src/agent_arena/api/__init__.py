"""HTTP control, query and server-sent event surface for the arena."""
