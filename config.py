import os
from datetime import timedelta
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))


class Config:
    # Basic Flask config - REQUIRE SECRET_KEY in production
    SECRET_KEY = os.environ.get('SECRET_KEY')
    if not SECRET_KEY:
        import secrets
        SECRET_KEY = secrets.token_hex(32)
        print("WARNING: No SECRET_KEY set. Generated temporary key. Set SECRET_KEY environment variable for production!")

    # Database config - DATABASE_URL wins (Postgres in production), then MySQL, then SQLite
    MYSQL_HOST = os.environ.get('MYSQL_HOST', 'localhost')
    MYSQL_PORT = os.environ.get('MYSQL_PORT', '3306')
    MYSQL_USER = os.environ.get('MYSQL_USER', 'root')
    MYSQL_PASSWORD = os.environ.get('MYSQL_PASSWORD', '')
    MYSQL_DATABASE = os.environ.get('MYSQL_DATABASE', 'canteen_db')

    if os.environ.get('DATABASE_URL'):
        SQLALCHEMY_DATABASE_URI = os.environ['DATABASE_URL']
    elif os.environ.get('USE_MYSQL', 'false').lower() == 'true':
        SQLALCHEMY_DATABASE_URI = f"mysql+pymysql://{MYSQL_USER}:{MYSQL_PASSWORD}@{MYSQL_HOST}:{MYSQL_PORT}/{MYSQL_DATABASE}"
    else:
        SQLALCHEMY_DATABASE_URI = 'sqlite:///canteen.db'

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_recycle': 300,
        'pool_pre_ping': True,
    }

    # Session config
    PERMANENT_SESSION_LIFETIME = timedelta(hours=24)
    SESSION_COOKIE_SECURE = os.environ.get('FLASK_ENV') == 'production'
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    # CSRF - API clients fetch the token from /api/csrf-token
    WTF_CSRF_ENABLED = True
    WTF_CSRF_TIME_LIMIT = None

    # Rate limiting config
    RATELIMIT_ENABLED = True
    RATELIMIT_STORAGE_URI = "memory://"
    RATELIMIT_DEFAULT = "500 per day;100 per hour"
    RATELIMIT_HEADERS_ENABLED = True

    # File upload config (menu images, top-up proofs, import files)
    UPLOAD_FOLDER = os.path.join(BASE_DIR, 'uploads')
    MAX_CONTENT_LENGTH = 16 * 1024 * 1024  # 16MB max file size
    ALLOWED_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif', 'webp'}
    IMPORT_EXTENSIONS = {'csv', 'xlsx'}

    # QR codes for student link slips
    QR_CODE_FOLDER = os.path.join(BASE_DIR, 'static', 'qrcodes')

    # Application URL (printed on link slips)
    APP_URL = os.environ.get('APP_URL', 'http://localhost:8000')
    APP_NAME = os.environ.get('APP_NAME', 'School Canteen')

    # Wallet rules
    CURRENCY_SYMBOL = os.environ.get('CURRENCY_SYMBOL', '₱')
    MIN_TOPUP_AMOUNT = int(os.environ.get('MIN_TOPUP_AMOUNT', '100'))
    MAX_TOPUP_AMOUNT = int(os.environ.get('MAX_TOPUP_AMOUNT', '50000'))

    # Orders for a delivery day close at this hour on the previous day
    ORDER_CUTOFF_HOUR = int(os.environ.get('ORDER_CUTOFF_HOUR', '18'))

    DEFAULT_ADMIN_PASSWORD = os.environ.get('DEFAULT_ADMIN_PASSWORD', 'admin123')


class DevelopmentConfig(Config):
    DEBUG = True
    SESSION_COOKIE_SECURE = False  # Allow non-HTTPS in development


class ProductionConfig(Config):
    DEBUG = False
    SESSION_COOKIE_SECURE = True  # Require HTTPS in production
    RATELIMIT_DEFAULT = "200 per day;50 per hour"


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite://')
    SQLALCHEMY_ENGINE_OPTIONS = {}
    WTF_CSRF_ENABLED = False
    RATELIMIT_ENABLED = False
    SESSION_COOKIE_SECURE = False


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
