from .sql.cli import app as sql_app
import typer

app = typer.Typer(
    pretty_exceptions_enable=False,
)

app.add_typer(sql_app, name="sql", help="MySQL server management commands")


def main():
    app()


if __name__ == "__main__":
    main()
