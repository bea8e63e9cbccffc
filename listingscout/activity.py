"""Activity records for pipeline invocations.

One `started` record is written as soon as a run begins and one terminal
record (`success`, `partial_success` or `failure`) when it ends. Writing a
record is a side effect: failures are logged and never propagate into the
run itself.
"""
from typing import Optional

from . import crud
from .utils import logger

STARTED = "started"
SUCCESS = "success"
PARTIAL_SUCCESS = "partial_success"
FAILURE = "failure"
TERMINAL_STATUSES = (SUCCESS, PARTIAL_SUCCESS, FAILURE)


class ActivityRecorder:
    def __init__(self, session_factory, module_name: str):
        self.session_factory = session_factory
        self.module_name = module_name

    def _write(self, status: str, **fields) -> Optional[int]:
        db = self.session_factory()
        try:
            entry = crud.log_activity(db, self.module_name, status, **fields)
            return entry.id
        except Exception as e:
            db.rollback()
            logger.error("Failed writing %s activity record: %s", status, e)
            return None
        finally:
            db.close()

    def started(self, message: str, search_config_id: Optional[int] = None) -> Optional[int]:
        return self._write(STARTED, message=message, search_config_id=search_config_id)

    def finished(self, status: str, message: str, search_config_id: Optional[int] = None,
                 listings_found: int = 0, sources_processed: int = 0,
                 execution_time_ms: Optional[int] = None, error_details: Optional[dict] = None,
                 metadata: Optional[dict] = None) -> Optional[int]:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"not a terminal status: {status}")
        return self._write(
            status,
            message=message,
            search_config_id=search_config_id,
            listings_found=listings_found,
            sources_processed=sources_processed,
            execution_time_ms=execution_time_ms,
            error_details=error_details,
            metadata=metadata,
        )
