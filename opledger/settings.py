import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    data_dir: Path
    db_path: Path
    index_path: Path
    app_name: str = "opledger"
    default_page_size: int = 20
    max_page_size: int = 2000
    log_level: str = "INFO"


def get_settings() -> Settings:
    data_dir = Path(os.getenv("OPLEDGER_DATA_DIR", str(Path.cwd() / ".data")))
    return Settings(
        data_dir=data_dir,
        db_path=Path(os.getenv("OPLEDGER_DB_PATH", str(data_dir / "operations.sqlite"))),
        index_path=Path(
            os.getenv("OPLEDGER_INDEX_PATH", str(data_dir / "operations-search.sqlite"))
        ),
        app_name=os.getenv("OPLEDGER_APP_NAME", "opledger"),
        default_page_size=int(os.getenv("OPLEDGER_DEFAULT_PAGE_SIZE", "20")),
        max_page_size=int(os.getenv("OPLEDGER_MAX_PAGE_SIZE", "2000")),
        log_level=os.getenv("OPLEDGER_LOG_LEVEL", "INFO"),
    )
