import sys
import logging
from pathlib import Path
from decouple import config, Csv

# CORE DJANGO SETTINGS

# Build paths inside the project like this: BASE_DIR / 'subdir'
BASE_DIR = Path(__file__).resolve().parent.parent

# Use 'development', 'staging', or 'production'
ENVIRONMENT = config('ENVIRONMENT', default='development')
DEBUG = config('DEBUG', default=True, cast=bool)

# Security settings
SECRET_KEY = config('SECRET_KEY', default='cetrack-insecure-development-key')
ALLOWED_HOSTS = config('ALLOWED_HOSTS', default='*', cast=Csv())

CSRF_TRUSTED_ORIGINS = config(
    'CSRF_TRUSTED_ORIGINS', default='https://localhost,https://127.0.0.1', cast=Csv()
)

# Security Headers - Applied only in production
if not DEBUG:
    SECURE_CONTENT_TYPE_NOSNIFF = True
    SECURE_HSTS_INCLUDE_SUBDOMAINS = True
    SECURE_HSTS_SECONDS = 31536000  # 1 year
    SECURE_REFERRER_POLICY = "strict-origin-when-cross-origin"
    SECURE_PROXY_SSL_HEADER = ('HTTP_X_FORWARDED_PROTO', 'https')
    X_FRAME_OPTIONS = 'DENY'


# APPLICATION DEFINITION

DJANGO_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
]

THIRD_PARTY_APPS = [
    'rest_framework',
    'rest_framework.authtoken',
]

PROJECT_APPS = [
    'accounts',
    'core',
    'compliance',
]

INSTALLED_APPS = DJANGO_APPS + THIRD_PARTY_APPS + PROJECT_APPS


# MIDDLEWARE CONFIGURATION

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
    'core.errors.EnhancedErrorHandlingMiddleware',
]


# URL AND ROUTING CONFIGURATION

ROOT_URLCONF = 'cetrack.urls'
WSGI_APPLICATION = 'cetrack.wsgi.application'


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


VERSION = '1.0.0'


# DATABASE CONFIGURATION - Environment-based, PostgreSQL in production

DB_ENGINE = config('DB_ENGINE', default='django.db.backends.sqlite3')

if DB_ENGINE == 'django.db.backends.sqlite3':
    DATABASES = {
        'default': {
            'ENGINE': DB_ENGINE,
            'NAME': config('DB_NAME', default=str(BASE_DIR / 'db.sqlite3')),
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': DB_ENGINE,
            'NAME': config('DB_NAME'),
            'USER': config('DB_USER'),
            'PASSWORD': config('DB_PASS'),
            'HOST': config('DB_HOST'),
            'PORT': config('DB_PORT', cast=int),
            'OPTIONS': {
                'sslmode': config('DB_SSLMODE', default='require'),
                'connect_timeout': 10,
            },
            'CONN_MAX_AGE': 600 if not DEBUG else 0,
            'CONN_HEALTH_CHECKS': True,
        }
    }


# CACHE CONFIGURATION
# The rate limiter counts in this cache. LocMemCache is per process, so limits
# are not shared between worker processes.

CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'cetrack-cache',
        'TIMEOUT': 300,  # 5 minutes
        'OPTIONS': {
            'MAX_ENTRIES': 5000,
        }
    }
}


# AUTHENTICATION AND AUTHORIZATION

AUTH_USER_MODEL = 'accounts.User'

AUTHENTICATION_BACKENDS = [
    'django.contrib.auth.backends.ModelBackend',
]

AUTH_PASSWORD_VALIDATORS = [
    {
        'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator',
        'OPTIONS': {'min_length': 8},
    },
    {
        'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator',
    },
]


# INTERNATIONALIZATION AND LOCALIZATION

LANGUAGE_CODE = 'en-us'
TIME_ZONE = config('TIME_ZONE', default='Asia/Ho_Chi_Minh')
USE_I18N = True
USE_TZ = True

STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'


# DJANGO REST FRAMEWORK CONFIGURATION

REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'rest_framework.authentication.SessionAuthentication',
        'rest_framework.authentication.TokenAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.IsAuthenticated',
    ],
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],
    'PAGE_SIZE': 20,
    'EXCEPTION_HANDLER': 'core.errors.api_exception_handler',
}


# COMPLIANCE ENGINE CONFIGURATION
# Read once by callers through compliance.config.EngineConfig.from_settings().

COMPLIANCE_ENGINE = {
    'ENDING_SOON_DAYS': config('COMPLIANCE_ENDING_SOON_DAYS', default=30, cast=int),
    'PACE_TOLERANCE': config('COMPLIANCE_PACE_TOLERANCE', default='0.5'),
    'AT_RISK_MIN_RATIO': config('COMPLIANCE_AT_RISK_MIN_RATIO', default='0.0'),
    # Empty keeps pace-based classification; 0.7 splits at 70% completion
    'AT_RISK_COMPLETION_THRESHOLD': config('COMPLIANCE_AT_RISK_COMPLETION_THRESHOLD', default=''),
    'CYCLE_GAP_POLICY': config('COMPLIANCE_CYCLE_GAP_POLICY', default='none'),
    'HISTORY_LIMIT': config('COMPLIANCE_HISTORY_LIMIT', default=50, cast=int),
    'DEFAULT_REQUIRED_CREDITS': config('COMPLIANCE_DEFAULT_REQUIRED_CREDITS', default='120'),
    'DEFAULT_CYCLE_YEARS': config('COMPLIANCE_DEFAULT_CYCLE_YEARS', default=5, cast=int),
}

# Fixed-window limits for expensive batch endpoints: (requests, window seconds)
COMPLIANCE_RATE_LIMITS = {
    'statistics': (config('RATE_LIMIT_STATISTICS', default=30, cast=int), 60),
    'bulk_review': (config('RATE_LIMIT_BULK_REVIEW', default=10, cast=int), 60),
}


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

LOGS_DIR = Path(config('LOGS_DIR', default=str(BASE_DIR / 'logs')))
LOGS_DIR.mkdir(exist_ok=True, parents=True)

LOG_FILE_PATH = LOGS_DIR / 'cetrack.log'

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,

    'formatters': {
        'verbose': {
            'format': '[{levelname}] {asctime} | {name} | {module}.{funcName}:{lineno} | {process:d} {thread:d} | {message}',
            'style': '{',
            'datefmt': '%Y-%m-%d %H:%M:%S',
        },
        'simple': {
            'format': '[{levelname}] {asctime} | {name} | {message}',
            'style': '{',
            'datefmt': '%Y-%m-%d %H:%M:%S',
        },
    },

    'filters': {
        'require_debug_true': {
            '()': 'django.utils.log.RequireDebugTrue',
        },
    },

    'handlers': {
        'console': {
            'level': 'DEBUG' if DEBUG else 'INFO',
            'class': 'logging.StreamHandler',
            'formatter': 'simple',
        },
        'file': {
            'level': 'INFO',
            'class': 'logging.handlers.RotatingFileHandler',
            'filename': str(LOG_FILE_PATH),
            'maxBytes': 15728640,  # 15MB
            'backupCount': 10,
            'formatter': 'verbose',
            'encoding': 'utf-8',
        },
        'error_file': {
            'level': 'ERROR',
            'class': 'logging.handlers.RotatingFileHandler',
            'filename': str(LOGS_DIR / 'cetrack_errors.log'),
            'maxBytes': 10485760,  # 10MB
            'backupCount': 20,
            'formatter': 'verbose',
            'encoding': 'utf-8',
        },
        'audit_file': {
            'level': 'INFO',
            'class': 'logging.handlers.RotatingFileHandler',
            'filename': str(LOGS_DIR / 'audit.log'),
            'maxBytes': 10485760,  # 10MB
            'backupCount': 20,
            'formatter': 'verbose',
            'encoding': 'utf-8',
        },
    },

    'loggers': {
        '': {
            'handlers': ['console', 'file'],
            'level': 'INFO',
        },
        'django': {
            'handlers': ['console', 'file', 'error_file'],
            'level': 'INFO',
            'propagate': False,
        },
        'django.request': {
            'handlers': ['console', 'file', 'error_file'],
            'level': 'WARNING',
            'propagate': False,
        },
        'django.db.backends': {
            'handlers': ['console'] if config('SQL_DEBUG', default=False, cast=bool) else ['file'],
            'level': 'DEBUG' if config('SQL_DEBUG', default=False, cast=bool) else 'WARNING',
            'propagate': False,
        },
        'compliance': {
            'handlers': ['console', 'file', 'error_file'],
            'level': 'DEBUG' if DEBUG else 'INFO',
            'propagate': False,
        },
        'compliance.audit': {
            'handlers': ['console', 'audit_file', 'error_file'],
            'level': 'INFO',
            'propagate': False,
        },
        'core': {
            'handlers': ['console', 'file', 'error_file'],
            'level': 'INFO',
            'propagate': False,
        },
        'accounts': {
            'handlers': ['console', 'file'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}


# ERROR TRACKING - Sentry, enabled when a DSN is configured

SENTRY_DSN = config('SENTRY_DSN', default='')
SENTRY_ENABLED = bool(SENTRY_DSN)

if SENTRY_ENABLED:
    import sentry_sdk
    from sentry_sdk.integrations.django import DjangoIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_sdk.init(
        dsn=SENTRY_DSN,
        integrations=[
            DjangoIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        traces_sample_rate=config('SENTRY_TRACES_SAMPLE_RATE', default=0.1, cast=float),
        send_default_pii=False,
        environment=ENVIRONMENT,
    )


# Testing environment overrides
if 'test' in sys.argv or 'pytest' in sys.modules:
    DATABASES['default'] = {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }

    # Disable migrations during testing for speed
    class DisableMigrations:
        def __contains__(self, item):
            return True

        def __getitem__(self, item):
            return None

    MIGRATION_MODULES = DisableMigrations()

    PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']


DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

logger = logging.getLogger(__name__)
logger.info(f"CE tracker starting in {ENVIRONMENT} mode (DEBUG={DEBUG})")
