import sys
from pathlib import Path


def get_app_name():
    return "osugit"

def is_frozen():
    """Returns True if running as a bundled executable."""
    return getattr(sys, 'frozen', False)

def get_data_path(filename: str = "") -> Path:
    """
    Get the path for persistent data storage (histories, .env).

    Args:
        filename: Optional filename to append to the base data path.
    """
    if is_frozen():
        data_dir = Path.home() / ".local" / "share" / get_app_name()
    else:
        # Dev mode: keep data next to the checkout
        data_dir = Path.cwd() / "data"

    data_dir.mkdir(parents=True, exist_ok=True)

    if filename:
        return data_dir / filename
    return data_dir

def record_path(root: Path, record_id: int) -> Path:
    """Stable location of one record's history under the storage root."""
    return Path(root) / str(int(record_id))

def staging_path(root: Path) -> Path:
    """Scratch area for downloads that are not yet committed."""
    return Path(root) / ".staging"
