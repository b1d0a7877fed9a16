"""
hytalepanel - installer and updater backend for a Hytale dedicated server panel.
"""

__version__ = "0.3.0"
