"""
Fingerprints - content-derived cache keys for targets.
指纹 —— 目标的内容寻址缓存键。

A target's fingerprint hashes:
  - its name
  - the identity of its computation (explicit command_key, else the source
    text of the command, else its qualified name)
  - the fingerprints of its dependencies, in sorted order

Because dependency fingerprints are folded in recursively, changing any
upstream computation changes every downstream fingerprint, which is what
makes "fingerprint exists in cache" a safe skip-if-unchanged test.

目标指纹对以下内容做哈希：名称、计算标识、所有依赖的指纹（排序后）。
依赖指纹递归折叠，上游任何计算变化都会改变所有下游指纹，
因此「缓存中存在该指纹」即可安全地跳过重建。
"""

from __future__ import annotations

import hashlib
import inspect
import json
from typing import Any, Callable, Mapping

from schema import Target


def command_identity(command: Callable[..., Any]) -> str:
    """
    Best-effort stable identity of a callable.
    尽力获取可调用对象的稳定标识：优先源码，其次模块 + 限定名。
    """
    try:
        return inspect.getsource(command)
    except (OSError, TypeError):
        module = getattr(command, "__module__", None) or ""
        qualname = getattr(command, "__qualname__", None) or repr(command)
        return f"{module}.{qualname}"


def compute_fingerprint(target: Target, dep_fingerprints: Mapping[str, str]) -> str:
    """
    Return the sha256 fingerprint of `target` given its dependencies' fingerprints.

    Raises:
        KeyError: if a dependency fingerprint is missing.
    """
    payload = {
        "name": target.name,
        "command": target.command_key or command_identity(target.command),
        "deps": [[d, dep_fingerprints[d]] for d in sorted(target.deps)],
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()
