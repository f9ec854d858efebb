"""Despacho best-effort de tareas en background (Celery)"""
from typing import Any
import logging

logger = logging.getLogger(__name__)


class BackgroundDispatcher:
    """Encola tareas Celery con .delay(); nunca lanza excepciones

    Si el broker no está disponible la tarea se pierde y queda en el log:
    el email de confirmación y el contador de descuentos no son críticos.
    """

    def dispatch(self, task: Any, **kwargs) -> bool:
        task_name = getattr(task, "name", repr(task))
        try:
            result = task.delay(**kwargs)
            logger.info(f"[CELERY] Tarea {task_name} encolada (id={getattr(result, 'id', None)})")
            return True
        except Exception as e:
            logger.error(f"[CELERY] No se pudo encolar {task_name}: {e}")
            return False
