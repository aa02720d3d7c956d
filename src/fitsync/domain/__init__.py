"""Entity shapes and the pure rules applied to them."""
