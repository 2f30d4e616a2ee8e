"""
mxexport: export MongoDB change stream events to Kinesis or Pub/Sub.
"""

__version__ = "0.1.0"
