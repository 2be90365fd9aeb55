from instance_guard.cli import main

raise SystemExit(main())
