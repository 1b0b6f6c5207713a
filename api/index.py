from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sunledger.api import app
from sunledger.config import configure_logging

configure_logging()

app.root_path = "/api"

handler = Mangum(app)
