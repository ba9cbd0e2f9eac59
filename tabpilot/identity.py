"""TABPILOT identity constants."""

__version__ = "0.3.0"
__codename__ = "TABPILOT"
__tagline__ = "Ask when unsure. Announce when guessing. Act when certain."

BANNER = r"""
 _____ _   ___ ___ ___ _    ___ _____
|_   _/_\ | _ ) _ \_ _| |  / _ \_   _|
  | |/ _ \| _ \  _/| || |_| (_) || |
  |_/_/ \_\___/_| |___|____\___/ |_|
"""
