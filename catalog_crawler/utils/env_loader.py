from __future__ import annotations

import os
from pathlib import Path
from typing import Union

from dotenv import find_dotenv, load_dotenv


PathLike = Union[str, Path]

ENV_FILE_VARIABLE = "CATALOG_CRAWLER_ENV_FILE"


def load_environment(dotenv_path: PathLike | None = None, *, override: bool = False) -> bool:
    """Load crawler settings from a .env file into ``os.environ``.

    Lookup order: ``dotenv_path``, then the file named by
    ``CATALOG_CRAWLER_ENV_FILE``, then the nearest .env above the working
    directory. Returns False when no file was found.
    """
    path = dotenv_path or os.getenv(ENV_FILE_VARIABLE) or find_dotenv(usecwd=True)
    if not path or not Path(path).is_file():
        return False

    return load_dotenv(dotenv_path=path, override=override)
