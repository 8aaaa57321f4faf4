"""
Celery tasks for group buying sessions.
Driven by Celery Beat; see CELERY_BEAT_SCHEDULE in settings.
"""
from collections import Counter
import logging

from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task(name='process_sessions_nearing_expiration')
def process_sessions_nearing_expiration():
    """
    Pre-fill sessions that are 8-10 minutes from expiry with a platform bot.
    Runs every 2 minutes so each session is seen at least once in the window.
    """
    from apps.group_buying.services.group_buying_service import GroupBuyingService

    service = GroupBuyingService()

    try:
        result = service.process_sessions_nearing_expiration()
        results = result.data or []
        bots_created = sum(
            1 for row in results if row.get('action') == GroupBuyingService.ACTION_BOT_CREATED
        )

        logger.info(
            f"Processed sessions nearing expiration - "
            f"Total: {len(results)}, Bots created: {bots_created}"
        )

        return {
            'processed': len(results),
            'bots_created': bots_created
        }

    except Exception as e:
        logger.error(f"Error processing sessions nearing expiration: {str(e)}")
        raise


@shared_task(name='process_expired_group_sessions')
def process_expired_group_sessions():
    """
    Settle every expired session.
    Runs every minute; overlapping runs are safe because each session is
    claimed before it is settled.
    """
    from apps.group_buying.services.group_buying_service import GroupBuyingService

    service = GroupBuyingService()

    try:
        result = service.process_expired_sessions()
        results = result.data or []
        actions = Counter(row.get('action') for row in results)

        logger.info(
            f"Processed expired sessions - "
            f"Total: {len(results)}, "
            f"Confirmed: {actions[GroupBuyingService.ACTION_CONFIRMED]}, "
            f"Pending stock: {actions[GroupBuyingService.ACTION_PENDING_STOCK]}, "
            f"Failed: {actions[GroupBuyingService.ACTION_FAILED]}"
        )

        return {
            'processed': len(results),
            'confirmed': actions[GroupBuyingService.ACTION_CONFIRMED],
            'pending_stock': actions[GroupBuyingService.ACTION_PENDING_STOCK],
            'failed': actions[GroupBuyingService.ACTION_FAILED],
            'retry_scheduled': actions[GroupBuyingService.ACTION_RETRY_SCHEDULED],
            'skipped': actions[GroupBuyingService.ACTION_SKIPPED]
        }

    except Exception as e:
        logger.error(f"Error processing expired sessions: {str(e)}")
        raise
