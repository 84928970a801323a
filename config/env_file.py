"""
Write a verified connection id back into the ``.env`` file.

Only used after the validator has confirmed the id works, so the next
process start picks it up as ``CONNECTION_ID``.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)


def update_env_file(
    path: Union[str, Path],
    key: str,
    value: str,
    *,
    template: Optional[Union[str, Path]] = None,
) -> bool:
    """
    Set ``key=value`` in an env file, adding the line if it is missing.

    When ``path`` does not exist it is seeded from ``template`` (typically
    ``.env.example``) if that exists.  Returns False when the file already
    held the value.
    """
    path = Path(path)
    if path.exists():
        content = path.read_text(encoding="utf-8")
    elif template is not None and Path(template).exists():
        content = Path(template).read_text(encoding="utf-8")
    else:
        content = ""

    pattern = re.compile(rf"^{re.escape(key)}=.*$", re.MULTILINE)
    line = f"{key}={value}"

    match = pattern.search(content)
    if match and match.group(0) == line:
        return False

    if match:
        content = pattern.sub(lambda _m: line, content, count=1)
    else:
        if content and not content.endswith("\n"):
            content += "\n"
        content += line + "\n"

    path.write_text(content, encoding="utf-8")
    logger.info("Wrote %s to %s", key, path)
    return True
