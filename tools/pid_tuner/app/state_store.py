import copy
import time
from collections import deque
from threading import Lock
from typing import Any, Deque, Dict, Optional

from .protocol import ParamMessage, TelemetryMessage, TestCompleteMessage


def _idle_tuning() -> Dict[str, Any]:
    return {
        "active": False,
        "method": None,
        "loop": None,
        "state": "idle",
        "iteration": 0,
        "total": None,
        "tests": 0,
        "best": None,
        "last_result": None,
        "updated_at": None,
    }


class TunerStateStore:
    def __init__(self, recent_results_limit: int = 200) -> None:
        self._lock = Lock()
        self._recent_results: Deque[Dict[str, Any]] = deque(maxlen=recent_results_limit)
        self._state: Dict[str, Any] = {
            "connection": {
                "connected": False,
                "host": None,
                "port": None,
                "reason": "idle",
                "updated_at": time.time(),
            },
            "robot": {},
            "params": {},
            "last_test_complete": None,
            "tuning": _idle_tuning(),
            "recent_results": [],
        }

    def set_connection(self,
                       connected: bool,
                       host: Optional[str] = None,
                       port: Optional[int] = None,
                       reason: Optional[str] = None) -> Dict[str, Any]:
        with self._lock:
            current = self._state["connection"]
            current["connected"] = connected
            current["host"] = host if host is not None else current.get("host")
            current["port"] = port if port is not None else current.get("port")
            current["reason"] = reason or ("connected" if connected else "disconnected")
            current["updated_at"] = time.time()
            return {"connection": copy.deepcopy(current)}

    def apply_message(self, message: Any) -> Dict[str, Any]:
        now = time.time()
        with self._lock:
            if isinstance(message, TelemetryMessage):
                robot = message.model_dump(exclude={"type"})
                robot["updated_at"] = now
                self._state["robot"] = robot
                return {"robot": copy.deepcopy(robot)}

            if isinstance(message, ParamMessage):
                self._state["params"][message.key] = {"value": message.value, "updated_at": now}
                return {"params": copy.deepcopy(self._state["params"])}

            if isinstance(message, TestCompleteMessage):
                entry = {"test_id": message.test_id, "success": message.success, "updated_at": now}
                self._state["last_test_complete"] = entry
                return {"last_test_complete": dict(entry)}

        return {}

    def start_tuning(self, method: str, loop: str, total: Optional[int]) -> Dict[str, Any]:
        with self._lock:
            tuning = _idle_tuning()
            tuning.update(active=True, method=method, loop=loop, state="running",
                          total=total, updated_at=time.time())
            self._state["tuning"] = tuning
            self._recent_results.clear()
            self._state["recent_results"] = []
            return {"tuning": copy.deepcopy(tuning), "recent_results": []}

    def apply_tuning_event(self, event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        patch: Dict[str, Any] = {}
        with self._lock:
            tuning = self._state["tuning"]
            tuning["updated_at"] = time.time()

            if event_type == "state":
                tuning["state"] = data.get("state", tuning["state"])
            elif event_type == "progress":
                tuning["iteration"] = data.get("iteration", tuning["iteration"])
                tuning["total"] = data.get("total", tuning["total"])
            elif event_type == "test_result":
                tuning["tests"] += 1
                tuning["last_result"] = dict(data)
                self._recent_results.append(dict(data))
                self._state["recent_results"] = list(self._recent_results)
                patch["recent_results"] = self._state["recent_results"]
            elif event_type == "best":
                tuning["best"] = dict(data)
            elif event_type == "finished":
                tuning["active"] = False
                tuning["state"] = "stopped"
                if data.get("best") is not None:
                    tuning["best"] = dict(data["best"])

            patch["tuning"] = copy.deepcopy(tuning)
        return patch

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            data = copy.deepcopy(self._state)
            data["recent_results"] = list(self._recent_results)
            return data

