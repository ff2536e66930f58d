"""
步骤级权限模型

与 CI 作业的 permissions 块一致：默认只读，只有上传步骤需要
security-events 写权限和 id-token。
"""
from __future__ import annotations

from typing import Dict, Literal, Mapping

PermissionLevel = Literal["none", "read", "write"]

SCOPES = ("actions", "contents", "security-events", "id-token")

_RANK: Dict[str, int] = {"none": 0, "read": 1, "write": 2}


def normalize(perms: Mapping[str, str]) -> Dict[str, str]:
    """
    补全缺失的 scope（视为 none），并校验 scope 名称与级别。
    """
    out: Dict[str, str] = {scope: "none" for scope in SCOPES}
    for scope, level in perms.items():
        if scope not in SCOPES:
            raise ValueError(f"Unknown permission scope: {scope}")
        if level not in _RANK:
            raise ValueError(f"Unknown permission level for {scope}: {level}")
        out[scope] = level
    return out


def missing(granted: Mapping[str, str], required: Mapping[str, str]) -> Dict[str, str]:
    """
    返回 granted 不能满足的 scope -> 所需级别。
    """
    granted_n = normalize(granted)
    return {
        scope: level
        for scope, level in normalize(required).items()
        if _RANK[granted_n[scope]] < _RANK[level]
    }
