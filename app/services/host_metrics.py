from __future__ import annotations

import asyncio
from typing import Any, Dict, List

import psutil


def _cpu_usage() -> List[Dict[str, float]]:
    frequencies = psutil.cpu_freq(percpu=True) or []
    cores: List[Dict[str, float]] = []
    for index, times in enumerate(psutil.cpu_times(percpu=True)):
        total = sum(times)
        busy = total - times.idle
        speed = frequencies[index].current if index < len(frequencies) else 0.0
        cores.append(
            {
                "speed_mhz": round(speed, 1),
                "usage": round(busy / total * 100, 2) if total else 0.0,
            }
        )
    return cores


def _snapshot() -> Dict[str, Any]:
    memory = psutil.virtual_memory()
    used = memory.total - memory.available
    cores = _cpu_usage()
    return {
        "memory": {
            "total": memory.total,
            "free": memory.available,
            "used": used,
            "usage_percentage": round(used / memory.total * 100, 2) if memory.total else 0.0,
        },
        "cpu": {
            "cores": psutil.cpu_count() or len(cores),
            "usage": cores,
        },
    }


async def system_metrics() -> Dict[str, Any]:
    """Host memory and per-core CPU usage since boot."""
    return await asyncio.to_thread(_snapshot)
