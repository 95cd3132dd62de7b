# Models package: import all models here so Alembic can discover them.

from app.models.user import User  # noqa: F401
from app.models.lead import Lead  # noqa: F401
from app.models.contact import Contact  # noqa: F401
from app.models.property import Property, ContactPropertyLink  # noqa: F401
from app.models.calendar_event import CalendarEvent  # noqa: F401
from app.models.activity import Activity  # noqa: F401
from app.models.notification import Notification  # noqa: F401
