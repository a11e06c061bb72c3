"""Allow ``python -m arbor``."""

import sys

from arbor.cli import main

sys.exit(main())
