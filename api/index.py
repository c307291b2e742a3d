import os
import sys

from mangum import Mangum

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rider_ledger.api import app  # noqa: E402

handler = Mangum(app, api_gateway_base_path="/api")
