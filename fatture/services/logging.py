"""Helper per logging strutturato JSON nei servizi applicativi."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

_event_logger = logging.getLogger("fatture.events")


def log_structured_event(
    action: str,
    *,
    message: Optional[str] = None,
    level: str = "info",
    **fields: Any,
) -> None:
    """Registra un evento di business (import, cancellazione, cambio stato...).

    Il formatter JSON installato da ``fatture.extensions`` riporta ``action`` e i
    campi aggiuntivi nella sezione ``extra`` del record.
    """

    log_method = getattr(_event_logger, level.lower(), _event_logger.info)

    payload: Dict[str, Any] = {"action": action}
    payload.update(fields)

    try:
        log_method(message or action, extra=payload)
    except (TypeError, ValueError, KeyError):
        # Il logging non deve mai interrompere il flusso di business
        _event_logger.debug("Logging strutturato fallito", exc_info=True)
