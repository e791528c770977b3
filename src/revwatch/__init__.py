"""Keep a locally running application in step with its upstream repository."""

__version__ = "0.1.0"

__all__ = ["__version__"]
