"""Infrastructure layer - composition root and wiring."""
