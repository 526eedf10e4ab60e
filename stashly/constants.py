"""Application-wide constant values."""

# Name used in notifications and logs
PROGRAM_IDENTIFIER = 'Stashly'

# Staging directory name under the work dir; the archive is named after it
EXPORT_DIR = 'db_exports'

# Fixed-width, lexicographically sortable timestamp layout for storage keys
DEFAULT_DATE_TIME_LAYOUT = '%Y%m%d%H%M%S'

DEFAULT_RETENTION_COUNT = 30

# Daily at midnight UTC
DEFAULT_CRON = '0 0 * * *'

PREFIX_SEPARATOR = '/'

# Databases never dumped, in addition to anything starting with TEMPLATE_PREFIX
TEMPLATE_PREFIX = 'template'
SYSTEM_DATABASES = ('postgres', 'defaultdb')

CONFIG_FILE_NAME = 'config.yaml'
CONFIG_DEFAULT_DIR = '/etc/stashly'
CONFIG_ENV_PREFIX = 'STASHLY'
