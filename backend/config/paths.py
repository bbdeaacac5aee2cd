"""
Centralized path configuration for Shipgate
Keeps the audit database, logs and mounted secrets in predictable locations
"""

import os

# Base data directory (audit database, logs)
# In CI containers this is usually a mounted workspace volume
DATA_DIR = os.getenv('SHIPGATE_DATA_DIR', './data')

# Audit database - the only state that survives a restart
DATABASE_PATH = os.path.join(DATA_DIR, 'shipgate.db')

# Log directory for the rotating file handler
LOG_DIR = os.path.join(DATA_DIR, 'logs')

# Mounted secrets (Docker swarm / Kubernetes layout)
SECRETS_DIR = os.getenv('SHIPGATE_SECRETS_DIR', '/run/secrets')
