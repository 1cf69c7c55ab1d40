"""deployforge CLI subcommands."""
