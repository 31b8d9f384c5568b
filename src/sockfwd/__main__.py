from sockfwd.cli import main

raise SystemExit(main())
