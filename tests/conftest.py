import os

# Force test DB and dev mode before any module reads Config
os.environ['DATABASE_URL'] = 'sqlite://'  # in-memory
os.environ['DEV_MODE'] = 'true'
