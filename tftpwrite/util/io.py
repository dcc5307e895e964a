import os
import pathlib
from typing import BinaryIO, Union

PathLike = Union[str, os.PathLike]


def to_path(pathlike: PathLike) -> pathlib.Path:
    return pathlib.Path(pathlike)


def parse_path(s: str) -> pathlib.Path:
    return pathlib.Path(s)


def open_sink(root_dir: PathLike, filename: str, overwrite: bool = True) -> BinaryIO:
    """Open ``filename`` for sequential binary writing.

    The name is joined onto ``root_dir`` as given, so an absolute filename
    replaces the root entirely and ``..`` components are honoured. Without
    ``overwrite`` an existing file raises FileExistsError.
    """
    path = to_path(root_dir) / filename
    return path.open("wb" if overwrite else "xb")
