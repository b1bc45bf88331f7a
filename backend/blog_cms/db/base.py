# Import all the models, so that Base has them before being
# imported by Alembic
from blog_cms.db.base_class import Base  # noqa

from blog_cms.models.user import User  # noqa
