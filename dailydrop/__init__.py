"""dailydrop: daily commitment scheduler and streak integrity engine."""

__version__ = "0.1.0"
