from .room_schemas import *
from .appointment_schemas import *
from .identity_schemas import *
