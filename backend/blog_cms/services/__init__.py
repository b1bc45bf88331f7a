# Services Package

from blog_cms.services.auth_service import AuthService, AuthTokens
from blog_cms.services.mail_service import BrevoMailService, MailDispatcher
from blog_cms.services.user_directory import SqlAlchemyUserDirectory, UserDirectory, UserRecord

__all__ = [
    "AuthService",
    "AuthTokens",
    "BrevoMailService",
    "MailDispatcher",
    "SqlAlchemyUserDirectory",
    "UserDirectory",
    "UserRecord",
]
