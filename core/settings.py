import os
from decimal import Decimal
from pathlib import Path
from dotenv import load_dotenv # Cargador de secretos

BASE_DIR = Path(__file__).resolve().parent.parent

# --- CARGAR VARIABLES DE ENTORNO ---
# Carga el archivo .env desde la raíz del proyecto
load_dotenv(BASE_DIR / '.env')

# --- SEGURIDAD ---
SECRET_KEY = os.getenv('SECRET_KEY', 'dev-insecure-key-cambiar-en-produccion')
DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
ALLOWED_HOSTS = [h for h in os.getenv('ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',') if h]

# -------------------------------------------------
# CSRF / CORS
# -------------------------------------------------
TRUSTED_URLS = [u for u in os.getenv('TRUSTED_ORIGINS', '').split(',') if u]

CSRF_TRUSTED_ORIGINS = TRUSTED_URLS
CORS_ALLOWED_ORIGINS = TRUSTED_URLS
CORS_ALLOW_CREDENTIALS = True

CSRF_COOKIE_SECURE = not DEBUG
SESSION_COOKIE_SECURE = not DEBUG
SESSION_COOKIE_SAMESITE = 'Lax'

# -------------------------------------------------
# Apps Instaladas
# -------------------------------------------------
INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',

    'rest_framework',
    'django_filters',
    'corsheaders',

    # Documentos Tributarios Electrónicos (MH El Salvador)
    'dte',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'corsheaders.middleware.CorsMiddleware',
    'whitenoise.middleware.WhiteNoiseMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'core.urls'
WSGI_APPLICATION = 'core.wsgi.application'

LANGUAGE_CODE = 'es-sv'
TIME_ZONE = 'America/El_Salvador'
USE_I18N = True
USE_TZ = True

# --- Base de datos ---
# MySQL en producción; SQLite local cuando no hay DATABASE_NAME definido.
if os.getenv('DATABASE_NAME'):
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.mysql',
            'NAME': os.getenv('DATABASE_NAME'),
            'USER': os.getenv('DATABASE_USER'),
            'PASSWORD': os.getenv('DATABASE_PASSWORD'),
            'HOST': os.getenv('DATABASE_HOST', 'localhost'),
            'PORT': os.getenv('DATABASE_PORT', '3306'),
            'OPTIONS': {
                'charset': 'utf8mb4',
                'init_command': "SET sql_mode='STRICT_TRANS_TABLES'",
                # Lecturas consistentes para los libros de IVA
                'isolation_level': 'repeatable read',
            },
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
        }
    }

# --- DRF ---
REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_PAGINATION_CLASS": "dte.pagination.DtePagination",
    "PAGE_SIZE": 50,
    "DEFAULT_FILTER_BACKENDS": [
        "django_filters.rest_framework.DjangoFilterBackend",
        "rest_framework.filters.SearchFilter",
        "rest_framework.filters.OrderingFilter",
    ],
    "EXCEPTION_HANDLER": "dte.api.exception_handler.dte_exception_handler",
}

# --- Templates ---
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

# --- Archivos estáticos ---
STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'
STORAGES = {
    'default': {'BACKEND': 'django.core.files.storage.FileSystemStorage'},
    'staticfiles': {'BACKEND': 'whitenoise.storage.CompressedStaticFilesStorage'},
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# -------------------------------------------------
# DTE / Ministerio de Hacienda
# -------------------------------------------------
# Ambiente MH: '00' = pruebas, '01' = producción
DTE_AMBIENTE = os.getenv('DTE_AMBIENTE', '00')

DTE_MH_TEST_URL = os.getenv('DTE_MH_TEST_URL', 'https://apitest.dtes.mh.gob.sv')
DTE_MH_PROD_URL = os.getenv('DTE_MH_PROD_URL', 'https://api.dtes.mh.gob.sv')
DTE_MH_USER = os.getenv('DTE_MH_USER', '')
DTE_MH_PASSWORD = os.getenv('DTE_MH_PASSWORD', '')

# Emisor (datos generales de la empresa)
DTE_EMISOR_NIT = os.getenv('DTE_EMISOR_NIT', '')
DTE_EMISOR_NRC = os.getenv('DTE_EMISOR_NRC', '')
DTE_EMISOR_NOMBRE = os.getenv('DTE_EMISOR_NOMBRE', '')
DTE_EMISOR_TELEFONO = os.getenv('DTE_EMISOR_TELEFONO', '')
DTE_EMISOR_CORREO = os.getenv('DTE_EMISOR_CORREO', '')

# API Firmador (servicio local que firma con el certificado del contribuyente)
DTE_FIRMADOR_URL = os.getenv('DTE_FIRMADOR_URL', 'http://localhost:8113')
DTE_FIRMADOR_PASSWORD = os.getenv('DTE_FIRMADOR_PASSWORD', '')

# Parámetros de red / resiliencia (segundos)
DTE_GATEWAY_CLASS = os.getenv('DTE_GATEWAY_CLASS', 'dte.services.gateway.MhGateway')
DTE_GATEWAY_TIMEOUT = (
    float(os.getenv('DTE_GATEWAY_CONNECT_TIMEOUT', 4)),
    float(os.getenv('DTE_GATEWAY_READ_TIMEOUT', 8)),
)
DTE_RETRY_MAX = int(os.getenv('DTE_RETRY_MAX', 2))
DTE_RETRY_BACKOFF = float(os.getenv('DTE_RETRY_BACKOFF', 1))

# Reglas tributarias
DTE_IVA_RATE = Decimal(os.getenv('DTE_IVA_RATE', '0.13'))
# Feriados nacionales (YYYY-MM-DD separados por coma) para el plazo de anulación
DTE_HOLIDAYS = [d.strip() for d in os.getenv('DTE_HOLIDAYS', '').split(',') if d.strip()]

# Portal de consulta pública (QR de la representación impresa)
DTE_CONSULTA_PUBLICA_URL = os.getenv('DTE_CONSULTA_PUBLICA_URL', 'https://admin.factura.gob.sv/consultaPublica')

# --- Celery ---
CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', CELERY_BROKER_URL)
CELERY_TASK_ALWAYS_EAGER = os.getenv('CELERY_TASK_ALWAYS_EAGER', 'False').lower() == 'true'
CELERY_TIMEZONE = TIME_ZONE

# --- LOGGING ---
LOG_DIR = BASE_DIR / 'logs'
LOG_DIR.mkdir(exist_ok=True)

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '%(asctime)s %(levelname)s %(name)s %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
        'file': {
            'level': 'INFO',
            'class': 'logging.handlers.RotatingFileHandler',
            'filename': LOG_DIR / 'dte.log',
            'maxBytes': 1024 * 1024 * 5,  # 5MB
            'backupCount': 5,
            'formatter': 'verbose',
        },
    },
    'loggers': {
        'django': {
            'handlers': ['file'],
            'level': 'INFO',
            'propagate': True,
        },
        'dte': {
            'handlers': ['console', 'file'],
            'level': os.getenv('DTE_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
    },
}
