from .common import *  # noqa
from .organization import *  # noqa
from .inventory import *  # noqa
from .scanning import *  # noqa
from .activity import *  # noqa

# Platform event-bus tables (transactional outbox + webhook subscriptions)
from eightball.events.outbox import *  # noqa
from eightball.events.subscriptions import *  # noqa
