"""Default values shared by the pipeline, the proxies and the HTTP service."""

# Google reCAPTCHA v3 endpoints
RECAPTCHA_SCRIPT_URL = "https://www.google.com/recaptcha/api.js?render=explicit"
RECAPTCHA_VERIFY_URL = "https://www.google.com/recaptcha/api/siteverify"

# Action name the form binds its challenge tokens to
DEFAULT_ACTION = "submit_waitlist"

# Minimum reCAPTCHA v3 score (0 = bot, 1 = human)
DEFAULT_MIN_SCORE = 0.5

# Humans need at least this long between form render and submit
DEFAULT_MIN_SUBMISSION_TIME_MS = 3000

# How long to wait for the widget callback before giving up on a token
CHALLENGE_TIMEOUT_SECONDS = 10.0
# How long to wait for the challenge script to become ready
SCRIPT_LOAD_TIMEOUT_SECONDS = 5.0

# Outbound HTTP calls (verification relay, siteverify, webhooks)
HTTP_TIMEOUT_SECONDS = 6.0

# Sliding window rate limit for the relay endpoints
DEFAULT_RATE_LIMIT_MAX = 10
DEFAULT_RATE_LIMIT_WINDOW_SEC = 60

# Webhook retry: fixed attempt count, fixed delay (no backoff)
DEFAULT_WEBHOOK_ATTEMPTS = 1
DEFAULT_WEBHOOK_RETRY_DELAY_SECONDS = 1.0

HONEYPOT_PREFIX = "hp_"

LOG_DIR = "logs"
LOG_FILE_NAME = "formguard.log"

# Server-issued form sessions (honeypot name + render time) expire after this
FORM_SESSION_EXPIRY_MINUTES = 30
