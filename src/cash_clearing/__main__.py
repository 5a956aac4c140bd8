"""Allow running as ``python -m cash_clearing``."""

import sys

from .runner.main import main

sys.exit(main())
