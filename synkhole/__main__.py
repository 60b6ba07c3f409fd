import sys

from synkhole.cli import main


sys.exit(main())
