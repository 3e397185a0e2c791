import sys

from mariadb_backup.cli import main

sys.exit(main())
