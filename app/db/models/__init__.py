from .db_base_model import *
from .user_table import *
from .appointment_table import *
from .notification_table import *
