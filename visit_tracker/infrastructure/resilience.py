import asyncio
import time
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Type
from datetime import datetime

from visit_tracker.locations import LocationCatalog
from visit_tracker.obs.logger import log_event
from visit_tracker.types import AnchorType
from visit_tracker.utils.times import parse_timestamp


class HealthChecker:
    def __init__(self):
        self.checks = {}
        self.last_check_time = {}
        self.check_results = {}

    def register_check(self, name: str, check_func: Callable, interval_seconds: int = 30):
        self.checks[name] = {
            "func": check_func,
            "interval": interval_seconds
        }

    async def run_checks(self) -> Dict:
        results = {}
        tasks = []

        for name, check_info in self.checks.items():
            last_time = self.last_check_time.get(name, 0)
            if time.time() - last_time >= check_info["interval"]:
                tasks.append(self._run_single_check(name, check_info["func"]))

        if tasks:
            for name, result in await asyncio.gather(*tasks):
                results[name] = result
                self.check_results[name] = result
                self.last_check_time[name] = time.time()

        # Cached results for checks that are not due yet
        for name in self.checks:
            if name not in results:
                results[name] = self.check_results.get(name, {"status": "unknown"})

        all_healthy = all(
            r.get("status") == "healthy"
            for r in results.values()
            if r.get("status") != "unknown"
        )

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": results,
            "timestamp": datetime.now().isoformat()
        }

    async def _run_single_check(self, name: str, check_func: Callable) -> Tuple[str, Dict]:
        try:
            start = time.time()
            if asyncio.iscoroutinefunction(check_func):
                result = await check_func()
            else:
                result = check_func()

            duration = time.time() - start
            return name, {
                "status": "healthy" if result else "unhealthy",
                "duration_ms": int(duration * 1000),
                "timestamp": datetime.now().isoformat()
            }
        except Exception as e:
            return name, {
                "status": "unhealthy",
                "error": str(e),
                "timestamp": datetime.now().isoformat()
            }


class RetryPolicy:
    """Bounded retry with exponential backoff for store I/O."""

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_base: float = 0.05,
        max_delay: float = 1.0,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    ):
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.max_delay = max_delay
        self.retry_on = retry_on

    def delay_for(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** attempt), self.max_delay)

    async def execute_with_retry(self, func: Callable, *args, op: str = "store", **kwargs) -> Any:
        for attempt in range(self.max_attempts):
            try:
                if asyncio.iscoroutinefunction(func):
                    return await func(*args, **kwargs)
                return func(*args, **kwargs)
            except self.retry_on as e:
                if attempt >= self.max_attempts - 1:
                    raise
                delay = self.delay_for(attempt)
                log_event("store_retry", level="WARNING", op=op, attempt=attempt + 1,
                          delay_s=delay, error=str(e))
                await asyncio.sleep(delay)


class RequestValidator:
    """Body checks for the visit endpoints.

    Each check returns ``(ok, error, extra)``; ``extra`` holds fields to add to
    the error response (e.g. the valid location ids).
    """

    def __init__(self, catalog: LocationCatalog):
        self.catalog = catalog

    @staticmethod
    def _require(data: Dict, fields: Iterable[str]) -> Optional[str]:
        for field in fields:
            value = data.get(field)
            if value is None or (isinstance(value, str) and not value.strip()):
                return f"Missing required field: {field}"
            if not isinstance(value, str):
                return f"Invalid field: {field} must be a string"
        return None

    def _check_location(self, location_id: str) -> Tuple[bool, Optional[str], Dict]:
        if self.catalog.get(location_id) is None:
            valid = self.catalog.ids()
            return False, f"Unknown locationId: {location_id}. Valid locations: {', '.join(valid)}", {
                "validLocations": valid
            }
        return True, None, {}

    @staticmethod
    def _check_timestamp(data: Dict) -> Optional[str]:
        try:
            parse_timestamp(data.get("timestamp"))
        except (ValueError, TypeError, OverflowError):
            return f"Invalid timestamp: {data.get('timestamp')!r}"
        return None

    @staticmethod
    def _check_anchor(value: Any, allowed: Iterable[AnchorType]) -> Optional[str]:
        names = [a.value for a in allowed]
        if value not in names:
            quoted = ", ".join(f'"{n}"' for n in names)
            return f"Invalid anchorType. Must be one of {quoted}."
        return None

    def _validate_visit(self, data: Dict) -> Tuple[bool, Optional[str], Dict]:
        error = self._require(data, ["userId", "locationId"])
        if error:
            return False, error, {}
        ok, error, extra = self._check_location(data["locationId"])
        if not ok:
            return ok, error, extra
        error = self._check_timestamp(data)
        return (error is None), error, {}

    def validate_checkin(self, data: Dict, allowed: Iterable[AnchorType]) -> Tuple[bool, Optional[str], Dict]:
        error = self._require(data, ["userId", "locationId"])
        if error:
            return False, error, {}
        if data.get("anchorType") in (None, ""):
            return False, "Missing required field: anchorType", {}
        error = self._check_anchor(data.get("anchorType"), allowed)
        if error:
            return False, error, {}
        return self._validate_visit(data)

    def validate_checkout(self, data: Dict, exit_anchors: Iterable[AnchorType]) -> Tuple[bool, Optional[str], Dict]:
        ok, error, extra = self._validate_visit(data)
        if ok and data.get("anchorType") not in (None, ""):
            error = self._check_anchor(data.get("anchorType"), exit_anchors)
            return (error is None), error, {}
        return ok, error, extra

    def validate_tap(self, data: Dict) -> Tuple[bool, Optional[str], Dict]:
        return self._validate_visit(data)

    def validate_cleanup(self, data: Dict) -> Tuple[bool, Optional[str], Dict]:
        error = self._require(data, ["userId"])
        keep = data.get("keepSessionIds")
        if error is None and (not isinstance(keep, list) or not all(isinstance(k, str) for k in keep)):
            error = "Required: userId (string), keepSessionIds (array of session IDs to keep)"
        return (error is None), error, {}
