from tracking_monitor.main import main

raise SystemExit(main())
