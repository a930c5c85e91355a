import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError

from nautic.models.player import PlayerState

logger = logging.getLogger(__name__)

Subscriber = Callable[[Dict[str, Any]], None]

# Fields cleared when the engine unloads a file
UNLOAD_FIELDS = ("filename", "time", "duration", "paused", "tracks")


class PlayerStateStore:
    """
    Single source of truth for the player state.

    Every mutation goes through update() or reset(); subscribers receive the
    changed fields only, in wire (camelCase) form.
    """

    def __init__(self, initial: Optional[PlayerState] = None) -> None:
        self._state = initial or PlayerState()
        self._subscribers: List[Subscriber] = []
        self._names: Dict[str, str] = {}
        for name, field in PlayerState.model_fields.items():
            self._names[name] = name
            if field.alias:
                self._names[field.alias] = name

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def snapshot(self) -> PlayerState:
        return self._state.model_copy(deep=True)

    def get(self, field: str) -> Any:
        return getattr(self._state, self._names[field])

    def update(self, partial: Dict[str, Any]) -> Dict[str, Any]:
        changes = {}
        for key, value in partial.items():
            name = self._names.get(key)
            if name is None:
                logger.warning(f"Ignoring unknown player state field: {key}")
                continue
            changes[name] = value
        if not changes:
            return {}

        merged = self._state.model_dump()
        merged.update(changes)
        try:
            self._state = PlayerState.model_validate(merged)
        except ValidationError as e:
            logger.warning(f"Rejected player state update {partial!r}: {e}")
            return {}

        published = self._state.model_dump(by_alias=True, include=set(changes))
        self._publish(published)
        return published

    def reset(self, fields: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        defaults = PlayerState()
        names = [self._names[f] for f in (fields or UNLOAD_FIELDS) if f in self._names]
        return self.update({name: getattr(defaults, name) for name in names})

    def _publish(self, partial: Dict[str, Any]) -> None:
        for callback in list(self._subscribers):
            try:
                callback(partial)
            except Exception as e:
                logger.error(f"State subscriber failed: {e}", exc_info=True)
