"""
Synthetic document generation.
"""

import random
import uuid
from typing import Callable, Optional

from .models import Document

VALUE_MIN = 1
VALUE_MAX = 100000  # exclusive


class DocumentGenerator:
    """
    Produce documents with a unique id and a random value in [1, 100000).

    The random source is injected so tests can seed it. When a source is given
    the ids are drawn from it too, making a seeded run fully reproducible.

    Example:
        >>> gen = DocumentGenerator(random.Random(7))
        >>> doc = gen.generate()
    """

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        id_factory: Optional[Callable[[], str]] = None
    ):
        self.rng = rng or random.Random()
        if id_factory is not None:
            self._id_factory = id_factory
        elif rng is not None:
            self._id_factory = lambda: str(uuid.UUID(int=self.rng.getrandbits(128), version=4))
        else:
            self._id_factory = lambda: str(uuid.uuid4())

    def generate(self) -> Document:
        return Document(
            id=self._id_factory(),
            value=self.rng.randrange(VALUE_MIN, VALUE_MAX),
        )
