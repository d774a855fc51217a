"""Parsing of AMDGPU DRM fdinfo entries and per-client engine usage tracking."""

from __future__ import annotations

import math
import re
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional

from gpuwatch.gpuinfo import (
    DRM_CLIENT_ID,
    DRM_PDEV,
    GpuProcess,
    ProcessType,
    busy_usage_from_time_usage_round,
    extract_drm_fdinfo_key_value,
)

_PDEV_OLD = "pdev"
_VRAM_OLD = "vram mem"
_VRAM = "drm-memory-vram"

_OLD_ENGINES = ("gfx", "compute", "dec", "enc")
_NEW_ENGINES = {
    "drm-engine-gfx": "gfx",
    "drm-engine-compute": "compute",
    "drm-engine-dec": "dec",
    "drm-engine-enc": "enc",
}

_UINT = re.compile(r"\s*\+?(\d+)")
_FLOAT = re.compile(r"\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


def _leading_uint(text: str) -> Optional[tuple[int, str]]:
    """Parse a leading unsigned number; return it and the remaining text."""
    match = _UINT.match(text)
    if match is None:
        return None
    return int(match.group(1)), text[match.end():]


def _leading_float(text: str) -> Optional[tuple[float, str]]:
    match = _FLOAT.match(text)
    if match is None:
        return None
    return float(match.group(0)), text[match.end():]


def _round_half_away(value: float) -> int:
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


@dataclass
class _Measurement:
    gfx: Optional[int]
    compute: Optional[int]
    dec: Optional[int]
    enc: Optional[int]
    timestamp: int


def _busy(current: Optional[int], previous: Optional[int], elapsed: int) -> Optional[int]:
    if current is None or previous is None or elapsed <= 0:
        return None
    if current < previous or current - previous > elapsed:
        return None
    return busy_usage_from_time_usage_round(current, previous, elapsed)


@dataclass
class AmdgpuProcessCache:
    """Engine times of DRM clients, kept from one process update to the next."""

    _last: dict[tuple[int, int, str], _Measurement] = field(default_factory=dict, init=False, repr=False)
    _current: dict[tuple[int, int, str], _Measurement] = field(default_factory=dict, init=False, repr=False)

    def parse_fdinfo(
        self,
        pdev: str,
        lines: Iterable[str],
        process: GpuProcess,
        now: Optional[int] = None,
    ) -> bool:
        """Fill ``process`` from fdinfo ``lines`` of a GPU at ``pdev``.

        Return False if the entry belongs to another GPU. ``now`` is a
        timestamp in nanoseconds.
        """
        if now is None:
            now = time.monotonic_ns()
        client_id: Optional[int] = None

        for raw in lines:
            line = raw[:-1] if raw.endswith("\n") else raw
            pair = extract_drm_fdinfo_key_value(line)
            if pair is None:
                continue
            key, value = pair

            if key in (_PDEV_OLD, DRM_PDEV):
                if value != pdev:
                    return False
            elif key == DRM_CLIENT_ID:
                parsed = _leading_uint(value)
                if parsed is None or parsed[1]:
                    continue
                client_id = parsed[0]
            elif key in (_VRAM_OLD, _VRAM):
                parsed = _leading_uint(value)
                if parsed is None or parsed[1] not in (" kB", " KiB"):
                    continue
                process.gpu_memory_usage = parsed[0] * 1024
            else:
                self._parse_engine(key, value, process)

        if client_id is None:
            return True

        cache_key = (client_id, process.pid, pdev)
        previous = self._last.pop(cache_key, None)
        if previous is not None:
            elapsed = now - previous.timestamp
            gfx = _busy(process.gfx_engine_used, previous.gfx, elapsed)
            if gfx is not None:
                process.gpu_usage = gfx
            compute = _busy(process.compute_engine_used, previous.compute, elapsed)
            if compute is not None:
                process.gpu_usage = (process.gpu_usage or 0) + compute
            dec = _busy(process.dec_engine_used, previous.dec, elapsed)
            if dec is not None:
                process.decode_usage = dec
            enc = _busy(process.enc_engine_used, previous.enc, elapsed)
            if enc is not None:
                process.encode_usage = enc

        assert cache_key not in self._current, "client id processed twice in one update"
        self._current[cache_key] = _Measurement(
            gfx=process.gfx_engine_used,
            compute=process.compute_engine_used,
            dec=process.dec_engine_used,
            enc=process.enc_engine_used,
            timestamp=now,
        )
        return True

    @staticmethod
    def _parse_engine(key: str, value: str, process: GpuProcess) -> None:
        old = next((name for name in _OLD_ENGINES if key.startswith(name)), None)
        if old is not None:
            suffix = key[len(old):]
            if not suffix:
                return
            index = _leading_uint(suffix)
            if index is None or index[1]:
                return
            parsed = _leading_float(value)
            if parsed is None or parsed[1] != "%":
                return
            usage = _round_half_away(parsed[0])
            if old == "gfx":
                process.type |= ProcessType.GRAPHICAL
                process.gpu_usage = (process.gpu_usage or 0) + usage
            elif old == "compute":
                process.type |= ProcessType.COMPUTE
                process.gpu_usage = (process.gpu_usage or 0) + usage
            elif old == "dec":
                process.decode_usage = (process.decode_usage or 0) + usage
            else:
                process.encode_usage = (process.encode_usage or 0) + usage
            return

        new = next((engine for prefix, engine in _NEW_ENGINES.items() if key.startswith(prefix)), None)
        if new is None:
            return
        parsed_ns = _leading_uint(value)
        if parsed_ns is None or parsed_ns[1] != " ns":
            return
        spent = parsed_ns[0]
        if new == "gfx":
            process.type |= ProcessType.GRAPHICAL
            process.gfx_engine_used = spent
        elif new == "compute":
            process.type |= ProcessType.COMPUTE
            process.compute_engine_used = spent
        elif new == "enc":
            process.enc_engine_used = spent
        else:
            process.dec_engine_used = spent

    def swap(self) -> None:
        """Make this update's measurements the reference for the next one."""
        self._last = self._current
        self._current = {}