import sys

from mqbackup.cli import main

sys.exit(main())
