import sys

from kubedeploy.cli import main

sys.exit(main())
