"""tokenkeeper: acquire, share and proactively refresh an OAuth access token.

The ``auth_token`` package holds the coordinator and its collaborators;
``errors`` holds the exception hierarchy and structured error logging.
"""

__version__ = "0.1.0"
