"""Settings defaults"""
import pytest
from sqlalchemy.engine import make_url

from mailcast.core.config import Settings


@pytest.mark.medium
class TestSettingsDefaults:
    def test_default_database_url_uses_psycopg2_driver(self):
        url = make_url(Settings.model_fields["DATABASE_URL"].default)
        assert url.drivername == "postgresql+psycopg2"
