"""Token authorization for upload and listing requests."""

from typing import Optional

from common.logging_config import get_logger
from uploadserver.config import UploadSettings
from uploadserver.exceptions import AccountDisabledError, NotAuthorizedError
from uploadserver.repositories.user_repository import User, UserRepository
from uploadserver.utils import run_query

logger = get_logger(__name__)


class Authorizer:
    def __init__(self, settings: UploadSettings):
        self.settings = settings
        self.user_repo = UserRepository()

    async def authorize(self, token: Optional[str]) -> User:
        """
        Resolve the user a token belongs to.

        Args:
            token: Value of the token header

        Returns:
            The enabled user owning the token

        Raises:
            NotAuthorizedError: If the token is missing or unknown
            AccountDisabledError: If the account has been disabled
        """
        if not token:
            raise NotAuthorizedError("No token provided.")

        user = await run_query(self.user_repo.get_by_token, token)
        if user is None:
            logger.warning("Rejected unknown token")
            raise NotAuthorizedError()

        if not user.enabled:
            logger.warning(f"Rejected disabled account [user_id={user.id}]")
            raise AccountDisabledError()

        return user

    async def resolve_uploader(self, token: Optional[str]) -> Optional[User]:
        """
        Resolve the owner of an upload.

        Private deployments require a valid token. Otherwise a token is
        optional and one matching no account uploads anonymously.
        """
        if self.settings.private:
            return await self.authorize(token)

        if not token:
            return None

        user = await run_query(self.user_repo.get_by_token, token)
        if user is not None and not user.enabled:
            logger.warning(f"Rejected disabled account [user_id={user.id}]")
            raise AccountDisabledError()
        return user
