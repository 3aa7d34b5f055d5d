from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rewards.api import create_app
from rewards.config import get_settings

settings = get_settings()

# Serverless platforms mount the function under the API prefix already
app = create_app(settings.model_copy(update={"API_PREFIX": ""}), root_path=settings.API_PREFIX)

handler = Mangum(app)
