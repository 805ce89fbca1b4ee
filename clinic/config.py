from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()

# Database (default: SQLite su file nella root del progetto)
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DATABASE_URL = os.getenv("CLINIC_DATABASE_URL", f"sqlite:///{os.path.join(BASE_DIR, 'clinic.sqlite')}")
SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() == "true"

# JWT (in produzione: variabili d'ambiente)
JWT_SECRET = os.getenv("JWT_SECRET", "CHANGE_ME_DEV_SECRET")
JWT_ALG = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", "60"))

# Agenda e coda
DEFAULT_APPOINTMENT_MINUTES = int(os.getenv("DEFAULT_APPOINTMENT_MINUTES", "30"))
MIN_APPOINTMENT_MINUTES = 5
MAX_APPOINTMENT_MINUTES = 480
AVG_CONSULTATION_MINUTES = int(os.getenv("AVG_CONSULTATION_MINUTES", "30"))
REMINDER_LEAD_HOURS = int(os.getenv("REMINDER_LEAD_HOURS", "24"))
REMINDER_WINDOW_MINUTES = int(os.getenv("REMINDER_WINDOW_MINUTES", "60"))

# Paginazione
PAGE_SIZE_DEFAULT = int(os.getenv("PAGE_SIZE_DEFAULT", "10"))
PAGE_SIZE_MAX = int(os.getenv("PAGE_SIZE_MAX", "100"))

# Avvio API: crea tabelle e carica i dati demo
SEED_ON_STARTUP = os.getenv("SEED_ON_STARTUP", "true").lower() == "true"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Dashboard Streamlit
API_BASE = os.getenv("API_BASE", "http://127.0.0.1:8000")
