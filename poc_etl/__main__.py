import sys

from poc_etl.cli import main

sys.exit(main())
