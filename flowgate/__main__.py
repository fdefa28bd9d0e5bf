import sys

from flowgate.cli import main

sys.exit(main())
