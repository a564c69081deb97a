from dataclasses import dataclass, field

from booking_engine.core import config


@dataclass
class BatchResult:
    """Outcome of a maintenance sweep. Failed items never abort the sweep."""
    succeeded: int = 0
    failed: int = 0
    errors: list[dict] = field(default_factory=list)
    items: list[dict] = field(default_factory=list)

    def record_success(self, item_id, **details) -> None:
        self.succeeded += 1
        self.items.append({'id': item_id, **details})

    def record_failure(self, item_id, error: Exception | str) -> None:
        self.failed += 1
        self.errors.append({'id': item_id, 'error': str(error)})

    def to_dict(self) -> dict:
        return {
            'succeeded': self.succeeded,
            'failed': self.failed,
            'errors': self.errors,
            'items': self.items,
        }


def clamp_batch_limit(limit: int | None) -> int:
    if limit is None:
        return config.BATCH_DEFAULT_LIMIT
    return max(1, min(config.BATCH_MAX_LIMIT, int(limit)))
