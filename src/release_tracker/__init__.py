"""Release tracker.

Follows the repositories a GitHub user has starred and keeps the latest
release of each one, spending as few rate-limited API calls as possible:
cached data is reused until its jittered expiry passes, and releases and
tags are reconciled into one canonical latest release per repository.
"""

__version__ = "0.1.0"
