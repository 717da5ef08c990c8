from .entitlements import *
from .notification_service import *
from .room_provisioner import *
from .appointment_service import *
