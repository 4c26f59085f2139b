import logging
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import HTTPException

from ltipdesk.services.vesting import ScheduleReconciliationError, VestingConfigError
from ltipdesk.services.vesting_events import EventTransitionError, MissingScheduleError, RegenerationRefusedError

logger = logging.getLogger(__name__)


@contextmanager
def ledger_errors() -> Iterator[None]:
    try:
        yield
    except (VestingConfigError, MissingScheduleError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except (RegenerationRefusedError, EventTransitionError) as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ScheduleReconciliationError:
        logger.exception("Vesting schedule failed to reconcile")
        raise
