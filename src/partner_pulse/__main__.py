"""Allow ``python -m partner_pulse``."""

import sys

from partner_pulse.cli import main

sys.exit(main())
