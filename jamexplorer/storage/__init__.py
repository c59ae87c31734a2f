"""Block record storage backends."""
