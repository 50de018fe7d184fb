import sys

from fairydust.cli import main

sys.exit(main())
