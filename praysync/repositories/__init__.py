"""Backend repositories — one per resource kind.

REPOSITORY_REGISTRY maps the cache resource name to its repository class.
"""

from __future__ import annotations

from praysync.repositories.base import BaseRepository
from praysync.repositories.intentions import IntentionsRepository
from praysync.repositories.people import PeopleRepository
from praysync.repositories.prayers import PrayersRepository

REPOSITORY_REGISTRY: dict[str, type[BaseRepository]] = {
    PeopleRepository.RESOURCE: PeopleRepository,
    IntentionsRepository.RESOURCE: IntentionsRepository,
    PrayersRepository.RESOURCE: PrayersRepository,
}


def get_repository(resource: str, **kwargs) -> BaseRepository:
    """Instantiate and return the repository for ``resource``.

    Args:
        resource: Cache resource name (e.g. 'people', 'intentions').
        **kwargs: Passed to the repository constructor.

    Returns:
        Instantiated BaseRepository subclass.

    Raises:
        KeyError: If no repository is registered for the resource.
    """
    cls = REPOSITORY_REGISTRY.get(resource)
    if cls is None:
        raise KeyError(
            f"No repository registered for resource '{resource}'. "
            f"Available: {list(REPOSITORY_REGISTRY)}"
        )
    return cls(**kwargs)


__all__ = [
    "BaseRepository",
    "IntentionsRepository",
    "PeopleRepository",
    "PrayersRepository",
    "REPOSITORY_REGISTRY",
    "get_repository",
]
