import os

# Settings and the module-level engine are built on first import.
os.environ.setdefault('DATABASE_URL', 'sqlite://')
os.environ.setdefault('PRIVILEGED_ACCOUNTS', '["ops@yard.example"]')
