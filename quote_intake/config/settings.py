"""
Quote Intake Configuration Settings

This module contains all configuration settings for the quotation intake core.
Settings can be overridden by environment variables.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent.parent
DATA_DIR = Path(os.getenv("QUOTE_INTAKE_DATA_DIR", str(BASE_DIR / "data")))
CHECKPOINT_DB = DATA_DIR / "coordinator_state.sqlite"

# API Keys
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
RESEND_API_KEY = os.getenv("RESEND_API_KEY")
GOOGLE_PLACES_API_KEY = os.getenv("GOOGLE_PLACES_API_KEY")

# Supabase Configuration
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

# Inbound mailbox (IMAP)
IMAP_HOST = os.getenv("IMAP_HOST", "imap.gmail.com")
IMAP_PORT = int(os.getenv("IMAP_PORT", "993"))
IMAP_USERNAME = os.getenv("IMAP_USERNAME")
IMAP_PASSWORD = os.getenv("IMAP_PASSWORD")
IMAP_FOLDER = os.getenv("IMAP_FOLDER", "INBOX")

# Sender identities
QUOTES_FROM_EMAIL = os.getenv("QUOTES_FROM_EMAIL", "presupuestos@example-machining.com")
HUMAN_REVIEW_EMAIL = os.getenv("HUMAN_REVIEW_EMAIL", "operaciones@example-machining.com")
COMPANY_NAME = os.getenv("COMPANY_NAME", "Taller de Mecanizado CNC")

# Model Configuration
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_DIMENSIONS = 1536
NOMINATIM_USER_AGENT = os.getenv("NOMINATIM_USER_AGENT", "quote-intake")

# Guardrail thresholds
CONFIDENCE_THRESHOLD_HIGH = 0.85
GOLDEN_RULE_THRESHOLD = 0.75
LLM_HANDLE_THRESHOLD = 0.7
SPAM_IGNORE_THRESHOLD = 0.9
COMPLAINT_ESCALATE_THRESHOLD = 0.8
OUT_OF_SCOPE_ESCALATE_THRESHOLD = 0.7
NO_SIGNAL_CONFIDENCE = 0.6
HANDLE_CONFIDENCE_CAP = 0.95

# Business Rules
REQUIRED_REQUEST_FIELDS = ["material", "quantity"]
OPTIONAL_REQUEST_FIELDS = ["tolerances", "surface_finish", "deadline"]

# Processes done in-house vs. subcontracted
INTERNAL_SERVICES = ["mecanizado cnc", "fresado", "torneado", "taladrado", "roscado", "rectificado"]
EXTERNAL_SERVICES = {
    "anodizado": ["anodizado", "anodizar", "anodized", "anodizing"],
    "cromado": ["cromado", "cromar", "chrome"],
    "temple": ["temple", "templado", "tratamiento térmico", "tratamiento termico", "heat treatment"],
    "nitrurado": ["nitrurado", "nitruración", "nitriding"],
    "soldadura_tig": ["soldadura", "tig", "welding"],
    "galvanizado": ["galvanizado", "zincado", "galvanized"],
    "pintura": ["pintura", "lacado", "pintado", "powder coating"],
}

MATERIALS = {
    "aluminio-6061": ["6061", "aluminio 6061"],
    "aluminio-7075": ["7075", "aluminio 7075"],
    "aluminio": ["aluminio", "aluminium", "aluminum"],
    "acero-inox-304": ["304", "inox 304", "aisi 304"],
    "acero-inox-316": ["316", "inox 316", "aisi 316"],
    "acero-f1140": ["f1140", "f-1140", "c45"],
    "acero": ["acero", "steel"],
    "titanio-gr5": ["titanio", "titanium", "ti6al4v", "grado 5"],
    "latón": ["latón", "laton", "brass"],
    "bronce": ["bronce", "bronze"],
    "plástico técnico": ["delrin", "pom", "nylon", "peek", "ptfe"],
}

# Senders that never carry quotation requests
BULK_SENDER_DOMAINS = [
    "substack.com", "revolut.com", "linkedin.com", "mailchimp.com",
    "hubspot.com", "sendgrid.net", "medium.com", "paypal.com",
]
BULK_SENDER_PREFIXES = ["noreply@", "no-reply@", "marketing@", "newsletter@", "notifications@", "donotreply@"]

# Provider sourcing
DEFAULT_SEARCH_LOCATION = os.getenv("DEFAULT_SEARCH_LOCATION", "Madrid")
DEFAULT_SEARCH_RADIUS_KM = int(os.getenv("DEFAULT_SEARCH_RADIUS_KM", "50"))
FALLBACK_COORDINATE = (40.4168, -3.7038)  # Madrid
MIN_REGISTRY_RESULTS = 3
OUTREACH_CAP = min(int(os.getenv("OUTREACH_CAP", "3")), 5)
RFQ_EXPIRY_DAYS = 7
FREE_MAIL_DOMAINS = [
    "gmail.com", "hotmail.com", "outlook.com", "yahoo.com", "yahoo.es",
    "live.com", "icloud.com", "example.com", "domain.com", "yourdomain.com",
]
SCRAPE_IGNORED_FRAGMENTS = [
    "placeholder", "noreply", "no-reply", "sentry", "wixpress",
    "facebook", "google", "twitter",
]
DIRECTORY_QUERY_TERMS = ["industrial", "taller"]

# Knowledge retrieval
RAG_MATCH_THRESHOLD = 0.7
RAG_MATCH_COUNT = 5
RAG_MAX_TOKENS = 1500
CHARS_PER_TOKEN = 4
EMBEDDING_CACHE_TTL_SECONDS = 3600
EMBEDDING_BATCH_SIZE = 100

# Orchestration
BATCH_CONCURRENCY = int(os.getenv("BATCH_CONCURRENCY", "3"))
SERVICE_FANOUT_LIMIT = 2

# Rate limit tiers per external dependency class (times in seconds)
RATE_LIMITS = {
    "llm": {
        "max_concurrent": 10, "min_time": 0.15,
        "reservoir": 450, "reservoir_refresh_amount": 450, "reservoir_refresh_interval": 60.0,
    },
    "directory": {
        "max_concurrent": 5, "min_time": 0.2,
        "reservoir": 100, "reservoir_refresh_amount": 100, "reservoir_refresh_interval": 60.0,
    },
    "email": {
        "max_concurrent": 3, "min_time": 0.5,
        "reservoir": 100, "reservoir_refresh_amount": 100, "reservoir_refresh_interval": 60.0,
    },
    "web": {
        "max_concurrent": 5, "min_time": 1.0,
        "reservoir": 50, "reservoir_refresh_amount": 50, "reservoir_refresh_interval": 60.0,
    },
}

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
