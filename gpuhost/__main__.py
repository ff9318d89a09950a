from gpuhost.cli import main

raise SystemExit(main())
