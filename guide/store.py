"""持久化：会话状态和 LLM 配置，两条记录，每次整体覆盖"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

STATE_KEY = "guide_state"
LLM_KEY = "guide_llm"


class StateStore(Protocol):
    def load(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    def save(self, key: str, blob: Dict[str, Any]):
        ...


class MemoryStore:
    """内存存储，进程退出即丢失"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        blob = self._data.get(key)
        return json.loads(json.dumps(blob)) if blob is not None else None

    def save(self, key: str, blob: Dict[str, Any]):
        self._data[key] = json.loads(json.dumps(blob))


class FileStore:
    """每个 key 一个 JSON 文件：<root>/<key>.json"""

    def __init__(self, root: Path):
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        return self.root / f"{key}.json"

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("读取 %s 失败，按空状态处理: %s", path, e)
            return None
        return data if isinstance(data, dict) else None

    def save(self, key: str, blob: Dict[str, Any]):
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.path_for(key)
        # 先写临时文件再替换，避免写到一半的文件
        fd, tmp = tempfile.mkstemp(dir=str(self.root), prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(blob, f, ensure_ascii=False, indent=2)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
