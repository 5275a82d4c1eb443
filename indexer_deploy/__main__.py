from indexer_deploy.cli import main

raise SystemExit(main())
