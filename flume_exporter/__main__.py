import sys

from flume_exporter.cli import main

sys.exit(main())
