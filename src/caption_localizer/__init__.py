"""
caption-localizer: transcribe, translate, typeset and burn captions into short videos.
"""

__version__ = "0.4.0"
