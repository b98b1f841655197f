import os
from typing import Any

import yaml


VERSION = "1.0.0"
API_BASE = "/api/v1"

CONFIG_PATH = os.getenv("CONFIG_PATH", "config.yaml")


class Config:
    """YAML 配置，支持 "a.b.c" 形式的点号取值。"""

    def __init__(self, path: str = CONFIG_PATH):
        self.path = path
        self.config = {}
        self.reload()

    def reload(self):
        data = {}
        if self.path and os.path.exists(self.path):
            with open(self.path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        self.config = data if isinstance(data, dict) else {}
        return self.config

    def get(self, key: str, default: Any = None) -> Any:
        cursor = self.config
        for part in [x for x in str(key or "").split(".") if x]:
            if not isinstance(cursor, dict) or part not in cursor:
                return default
            cursor = cursor[part]
        if cursor is None:
            return default
        return cursor

    def set(self, key: str, value: Any):
        keys = [x for x in str(key or "").split(".") if x]
        if not keys:
            return
        cursor = self.config
        for part in keys[:-1]:
            current = cursor.get(part)
            if not isinstance(current, dict):
                cursor[part] = {}
            cursor = cursor[part]
        cursor[keys[-1]] = value


cfg = Config()


def set_config(key: str, value: Any):
    """仅修改内存中的配置，不落盘。"""
    cfg.set(key, value)

