import sys

from mu_analyzer.main import main

sys.exit(main())
