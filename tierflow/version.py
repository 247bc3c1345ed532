"""Version information for tierflow."""

# Semantic version - update this when releasing
__version__ = "0.3.0"
