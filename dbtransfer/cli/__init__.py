import typer

from dbtransfer.cli import dump, live

# Create main app
app = typer.Typer(help="MariaDB / PostgreSQL transfer tool: export, import, clone, copy and merge")

# Register all commands
dump.register_dump_commands(app)
live.register_live_commands(app)

__all__ = ["app"]
