import pytest

from piopi.users.models import User
from piopi.users.tests.factories import AdminUserFactory
from piopi.users.tests.factories import UserFactory


@pytest.fixture
def user(db) -> User:
    return UserFactory()


@pytest.fixture
def platform_admin(db) -> User:
    return AdminUserFactory()
