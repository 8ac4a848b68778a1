"""Write and read the JSON server list snapshot."""
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from a2sapi.assembler import ServerList

logger = logging.getLogger(__name__)


def write_snapshot(path: str, server_list: ServerList) -> None:
    """Replace the snapshot atomically so readers never see a partial file."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".servers-", suffix=".json", dir=str(target.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(server_list.to_dict(), f, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, target)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise
    logger.info("Snapshot written to %s (%d servers)", target, server_list.server_count)


def read_snapshot(path: str) -> Optional[Dict[str, Any]]:
    """Latest snapshot as a dict, or None if none was written yet or it cannot be read."""
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Cannot read snapshot %s: %s", path, e)
        return None
