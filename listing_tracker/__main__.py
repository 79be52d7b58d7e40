"""Allow ``python -m listing_tracker``."""

import sys

from listing_tracker.cli import main

sys.exit(main())
