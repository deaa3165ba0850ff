"""
Django settings for intake_gateway project.
"""
import os
import sys
from datetime import timedelta
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.getenv('DJANGO_SECRET_KEY', 'dev-secret-key-change-in-production')
DEBUG = os.getenv('DEBUG', 'True').lower() == 'true'
ALLOWED_HOSTS = os.getenv('ALLOWED_HOSTS', 'localhost,127.0.0.1,testserver').split(',')

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'intake',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'intake_gateway.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

# Database configuration
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.postgresql',
        'NAME': os.getenv('DB_NAME', 'intake_gateway'),
        'USER': os.getenv('DB_USER', 'postgres'),
        'PASSWORD': os.getenv('DB_PASSWORD', 'postgres'),
        'HOST': os.getenv('DB_HOST', 'localhost'),
        'PORT': os.getenv('DB_PORT', '5432'),
    }
}

RUNNING_TESTS = (
    os.getenv('USE_SQLITE_FOR_TESTS', '').lower() == 'true'
    or any('pytest' in arg for arg in sys.argv)
    or bool(os.getenv('PYTEST_CURRENT_TEST'))
)

# Use SQLite for tests to avoid requiring a running PostgreSQL server
if RUNNING_TESTS:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': os.getenv('SQLITE_NAME', ':memory:'),
        }
    }

# Shared cache backs the per-IP throttle and geocoding lookups.
# Point CACHE_REDIS_URL at the same Redis as Celery in multi-instance deployments.
CACHE_REDIS_URL = os.getenv('CACHE_REDIS_URL', '')
if CACHE_REDIS_URL and not RUNNING_TESTS:
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.redis.RedisCache',
            'LOCATION': CACHE_REDIS_URL,
        }
    }
else:
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
            'LOCATION': 'intake-gateway',
        }
    }

LANGUAGE_CODE = 'en-us'
TIME_ZONE = os.getenv('TIME_ZONE', 'UTC')
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# Celery configuration
CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', 'redis://localhost:6379/0')
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_BEAT_SCHEDULE = {
    'process-lead-queue': {
        'task': 'intake.tasks.process_lead_queue',
        'schedule': timedelta(minutes=1),
    },
    'reclaim-stale-lead-jobs': {
        'task': 'intake.tasks.reclaim_stale_lead_jobs',
        'schedule': timedelta(minutes=5),
    },
    'purge-expired-sessions': {
        'task': 'intake.tasks.purge_expired_sessions',
        'schedule': timedelta(hours=1),
    },
    'cleanup-lead-jobs': {
        'task': 'intake.tasks.cleanup_lead_jobs',
        'schedule': timedelta(days=1),
    },
}

if RUNNING_TESTS:
    CELERY_BROKER_URL = 'memory://'
    CELERY_RESULT_BACKEND = 'cache+memory://'
    CELERY_TASK_ALWAYS_EAGER = True
    CELERY_TASK_EAGER_PROPAGATES = True

# Practice area configuration
PRACTICE_AREAS_CONFIG_PATH = os.getenv(
    'PRACTICE_AREAS_CONFIG_PATH',
    str(BASE_DIR / 'intake' / 'practice_areas.json')
)
INTAKE_DEFAULT_CATEGORY = os.getenv('INTAKE_DEFAULT_CATEGORY', 'general')
INTAKE_CATEGORY_FALLBACK_AFTER = int(os.getenv('INTAKE_CATEGORY_FALLBACK_AFTER', '2'))

# Chat sessions
CHAT_SESSION_TTL = int(os.getenv('CHAT_SESSION_TTL', str(7 * 24 * 60 * 60)))
CHAT_RATE_LIMIT = int(os.getenv('CHAT_RATE_LIMIT', '30'))
CHAT_RATE_WINDOW = int(os.getenv('CHAT_RATE_WINDOW', '60'))

# Lead queue
LEAD_QUEUE_MAX_ATTEMPTS = int(os.getenv('LEAD_QUEUE_MAX_ATTEMPTS', '3'))
LEAD_QUEUE_VISIBILITY_TIMEOUT = int(os.getenv('LEAD_QUEUE_VISIBILITY_TIMEOUT', '300'))
LEAD_QUEUE_DEQUEUE_TIMEOUT = float(os.getenv('LEAD_QUEUE_DEQUEUE_TIMEOUT', '5'))
LEAD_QUEUE_POLL_INTERVAL = float(os.getenv('LEAD_QUEUE_POLL_INTERVAL', '0.5'))
LEAD_JOB_RETENTION = int(os.getenv('LEAD_JOB_RETENTION', str(7 * 24 * 60 * 60)))
LEAD_BATCH_MAX_JOBS = int(os.getenv('LEAD_BATCH_MAX_JOBS', '10'))
LEAD_BATCH_SIZE = int(os.getenv('LEAD_BATCH_SIZE', '5'))
LEAD_WORKER_SHUTDOWN_TIMEOUT = float(os.getenv('LEAD_WORKER_SHUTDOWN_TIMEOUT', '30'))
LEAD_WORKER_CONCURRENCY = int(os.getenv('LEAD_WORKER_CONCURRENCY', '1' if RUNNING_TESTS else '5'))
LEAD_QUEUE_KICK_ON_SUBMIT = os.getenv('LEAD_QUEUE_KICK_ON_SUBMIT', 'True').lower() == 'true'

# LeadProsper (vendor) configuration
LEADPROSPER_API_URL = os.getenv('LEADPROSPER_API_URL', 'https://api.leadprosper.io/direct_post')
LEADPROSPER_API_TOKEN = os.getenv('LEADPROSPER_API_TOKEN', '')
LEADPROSPER_TIMEOUT = float(os.getenv('LEADPROSPER_TIMEOUT', '30'))
LEADPROSPER_MAX_RETRIES = int(os.getenv('LEADPROSPER_MAX_RETRIES', '3'))
LEADPROSPER_BACKOFF_BASE = float(os.getenv('LEADPROSPER_BACKOFF_BASE', '1'))
LEADPROSPER_BACKOFF_MAX = float(os.getenv('LEADPROSPER_BACKOFF_MAX', '10'))
LEADPROSPER_TOTAL_TIMEOUT = float(os.getenv('LEADPROSPER_TOTAL_TIMEOUT', '30'))
LEADPROSPER_FIELD_MAP = {}

# Generative extraction backend (OpenAI-compatible chat completions)
OPENAI_API_KEY = os.getenv('OPENAI_API_KEY', '')
OPENAI_MODEL = os.getenv('OPENAI_MODEL', 'gpt-4o-mini')
OPENAI_API_URL = os.getenv('OPENAI_API_URL', 'https://api.openai.com/v1/chat/completions')
OPENAI_TIMEOUT = float(os.getenv('OPENAI_TIMEOUT', '8'))

# ZIP geocoding
GEOCODING_API_URL = os.getenv('GEOCODING_API_URL', 'http://api.zippopotam.us/us/{zip}')
GEOCODING_TIMEOUT = float(os.getenv('GEOCODING_TIMEOUT', '5'))
GEOCODING_CACHE_TTL = int(os.getenv('GEOCODING_CACHE_TTL', str(30 * 24 * 60 * 60)))

# Scheduled batch endpoint authentication
CRON_SECRET = os.getenv('CRON_SECRET', '')

# Logging configuration
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {module} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'INFO',
    },
    'loggers': {
        'intake': {
            'handlers': ['console'],
            'level': os.getenv('INTAKE_LOG_LEVEL', 'DEBUG'),
            'propagate': False,
        },
    },
}

# REST Framework configuration
REST_FRAMEWORK = {
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],
    'DEFAULT_PARSER_CLASSES': [
        'rest_framework.parsers.JSONParser',
    ],
    'DEFAULT_AUTHENTICATION_CLASSES': [],
    'DEFAULT_PERMISSION_CLASSES': [],
    'UNAUTHENTICATED_USER': None,
}
