"""Allow ``python -m stampede run <scenario-file>``."""

from stampede.cli import main

raise SystemExit(main())
