"""Allow ``python -m buildflow``."""

import sys

from .cli import main

sys.exit(main())
