"""extmanager - extension installation and dependency resolution for CMS extension managers"""

__version__ = "0.1.0"
