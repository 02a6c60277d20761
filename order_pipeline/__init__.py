"""Order processing and transactional messaging service."""

__version__ = "0.1.0"
