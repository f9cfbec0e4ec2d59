"""
Base factory classes and utilities.

This module provides the foundation for creating test data factories
using factory_boy with async SQLAlchemy support.
"""
from datetime import datetime, timedelta

import factory
from faker import Faker

fake = Faker()


class BaseFactory(factory.Factory):
    """Base factory for all model factories.

    build()/create() only construct the model. Persisting is left to the
    test's AsyncSession, see ``persist``.
    """

    class Meta:
        abstract = True

    @classmethod
    def _create(cls, model_class, *args, **kwargs):
        """Override create to handle SQLAlchemy models."""
        return model_class(*args, **kwargs)


async def persist(session, *objects):
    """Add objects to the session, commit and return the first one."""
    session.add_all(objects)
    await session.commit()
    return objects[0]


def ago(**kwargs) -> datetime:
    """A naive UTC timestamp the given timedelta in the past."""
    return datetime.utcnow() - timedelta(**kwargs)


def generate_hostname(prefix: str = "gh") -> str:
    """A runner hostname in the same shape the substrates produce."""
    return f"{prefix}-{fake.word()}-{fake.word()}-{fake.hexify('^^^^')}".lower()


async def fetch(session_factory, model, pk):
    """Load a row in a fresh session, bypassing any test session's identity map."""
    async with session_factory() as session:
        return await session.get(model, pk)
