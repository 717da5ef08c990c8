from .models import *
from .db_manager import DbManager
from .deps import get_db, get_session
