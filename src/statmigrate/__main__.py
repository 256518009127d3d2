import sys

from statmigrate.cli import main

sys.exit(main())
