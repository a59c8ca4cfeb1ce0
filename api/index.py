"""
Serverless entry point for the OpsQueue SLA API
"""
import os
import sys

# Make the src/ layout importable without installation
src_dir = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src")
if src_dir not in sys.path:
    sys.path.insert(0, src_dir)

# Serverless defaults: no background scheduler, no policy file watch target
os.environ.setdefault("ENVIRONMENT", "production")
os.environ.setdefault("SLA_POLICY_PATH", "/tmp/sla_policies.yaml")
os.environ.setdefault("SLA_SWEEP_INTERVAL_SECONDS", "0")

from mangum import Mangum
from opsqueue.main import app

# Lambda handler; the lifespan still runs so the engine and database exist
handler = Mangum(app, lifespan="auto")
