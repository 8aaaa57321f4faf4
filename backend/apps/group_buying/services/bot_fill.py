"""
Platform bot fill.

Every session should look at least 25% full. When real demand falls
short, a bot participant makes up the difference so real buyers still
get the tier 50 price break. Bots never pay and never get orders.
"""
import math
from typing import Optional

from django.conf import settings

from apps.core.services.base import BaseService
from apps.group_buying.models import GroupBuyingSession, GroupParticipant
from apps.group_buying.services.tiering import fill_percentage

MIN_FILL_PERCENT = 25

PREEMPTIVE_REFERENCE_PREFIX = 'BOT-PREEMPTIVE'
SETTLEMENT_REFERENCE_PREFIX = 'BOT'


def compute_bot_quantity(target_moq: int, real_quantity: int) -> int:
    """
    Units the bot must commit to lift the session to 25% fill.
    Zero when real demand already covers it.
    """
    if fill_percentage(real_quantity, target_moq) >= MIN_FILL_PERCENT:
        return 0
    return max(0, math.ceil(target_moq * MIN_FILL_PERCENT / 100) - real_quantity)


class BotFillPolicy(BaseService):
    """Creates bot participants through the session repository."""

    def __init__(self, repository, bot_user_id: Optional[str] = None):
        super().__init__()
        self.repository = repository
        self.bot_user_id = bot_user_id if bot_user_id is not None else getattr(settings, 'BOT_USER_ID', None)

    @property
    def enabled(self) -> bool:
        return bool(self.bot_user_id)

    def fill(
        self,
        session: GroupBuyingSession,
        real_quantity: int,
        reference_prefix: str = SETTLEMENT_REFERENCE_PREFIX
    ) -> Optional[GroupParticipant]:
        """
        Create a bot for the session if it is below 25% real fill.

        Returns:
            The bot participant, or None when no bot was needed or allowed
        """
        quantity = compute_bot_quantity(session.target_moq, real_quantity)
        if quantity <= 0:
            return None

        if not self.enabled:
            self.log_warning(
                "BOT_USER_ID not configured - skipping bot creation",
                session_id=session.id
            )
            return None

        bot = self.repository.create_bot_participant(
            session,
            bot_user_id=self.bot_user_id,
            quantity=quantity,
            payment_reference_prefix=reference_prefix
        )

        self.log_info(
            f"Bot filled session {session.session_code} to {MIN_FILL_PERCENT}%",
            session_id=session.id,
            bot_quantity=quantity,
            real_quantity=real_quantity,
            reference_prefix=reference_prefix
        )
        return bot
