"""Control-plane schema migrations."""
