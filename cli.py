# cli.py
import json

import typer

import config
from xui import crud, settings
from xui.database import Database
from xui.errors import XUIError
from xui.migrations import applied_versions, run_migrations
from xui.services.xray_service import XrayService

app = typer.Typer(
    help="x-ui panel management tool",
    add_completion=False,
    no_args_is_help=True
)


def open_db() -> Database:
    database = Database(config.DB_PATH)
    database.init()
    return database


@app.command()
def version():
    """Show the panel version."""
    print(f"{config.PANEL_NAME} v{config.VERSION}")


@app.command()
def set_admin(
    username: str = typer.Argument(..., help="admin username"),
    password: str = typer.Argument(..., help="new admin password")
):
    """Create the admin user or reset its password."""
    database = open_db()
    with database.session() as db:
        user = crud.get_user_by_username(db, username)
        if user:
            crud.update_user_password(db, username, password)
            print(f"✅ password of user '{username}' updated.")
        else:
            crud.create_user(db, username, password)
            print(f"✅ user '{username}' created.")
    database.close()


@app.command()
def change_port(
    port: int = typer.Argument(..., help="new panel port")
):
    """Change the port the panel listens on."""
    if port < 1 or port > 65535:
        print("❌ invalid port, use a number between 1 and 65535.")
        raise typer.Exit(code=1)

    database = open_db()
    with database.session() as db:
        settings.update(db, {"webPort": port})
    database.close()
    print(f"✅ panel port changed to {port}. Restart the panel to apply it: systemctl restart x-ui")


@app.command()
def show_config():
    """Print the xray config assembled from the database."""
    database = open_db()
    try:
        xray_config = XrayService(database).get_xray_config()
    except XUIError as e:
        print(f"❌ {e.message}")
        raise typer.Exit(code=1)
    finally:
        database.close()
    print(json.dumps(xray_config.to_dict(), indent=2))


@app.command()
def reset_traffic(
    inbound_id: int = typer.Argument(..., help="inbound whose client counters are cleared")
):
    """Zero the up/down counters of every client of an inbound."""
    database = open_db()
    try:
        with database.session() as db:
            count = crud.reset_all_client_traffics(db, inbound_id)
    except XUIError as e:
        print(f"❌ {e.message}")
        raise typer.Exit(code=1)
    finally:
        database.close()
    print(f"✅ traffic of {count} clients reset.")


@app.command()
def migrate():
    """Apply pending database migrations."""
    database = Database(config.DB_PATH)
    applied = run_migrations(database.engine)
    if applied:
        print(f"✅ applied migrations: {', '.join(str(v) for v in applied)}")
    else:
        print(f"✅ database is up to date ({len(applied_versions(database.engine))} migrations).")
    database.close()


if __name__ == "__main__":
    app()
