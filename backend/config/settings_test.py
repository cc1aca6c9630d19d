from .settings import *  # noqa: F401,F403

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
    }
}

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'

CELERY_TASK_ALWAYS_EAGER = False
CELERY_BROKER_URL = 'memory://'
CELERY_RESULT_BACKEND = 'cache+memory://'

CHARGEBEE_SITE = 'test-site'
CHARGEBEE_API_KEY = 'test_key'
SHOPIFY_STORE_DOMAIN = 'test-store.myshopify.com'
SHOPIFY_ACCESS_TOKEN = 'shpat_test'
YOUSIGN_API_KEY = 'ys_test'
RECHARGE_API_TOKEN = 'rc_test'
