"""Allow ``python -m testgen_agent``."""

import sys

from testgen_agent.cli import main

sys.exit(main())
