from dynserve.cli import main

raise SystemExit(main())
