"""Create the data and log directories and apply database migrations."""
from pathlib import Path

from azuka.config import get_settings
from azuka.database import run_migrations
from azuka.logging_config import configure_logging


def main() -> None:
    configure_logging()
    settings = get_settings()
    if settings.database_url.startswith("sqlite:///"):
        db_path = Path(settings.database_url.removeprefix("sqlite:///"))
        db_path.parent.mkdir(parents=True, exist_ok=True)
    run_migrations()
    print("Database ready at", settings.database_url)
    print("Logs written to", settings.log_dir.resolve())


if __name__ == "__main__":
    main()
