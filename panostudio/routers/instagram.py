from fastapi import APIRouter, Depends

from panostudio.config import logger
from panostudio.dependencies import get_current_user, get_publisher
from panostudio.models import InstagramPostRequest
from panostudio.services.publisher import PublishOrchestrator

router = APIRouter()


@router.post("/post")
def post_to_instagram(
    request: InstagramPostRequest,
    user_id: str = Depends(get_current_user),
    publisher: PublishOrchestrator = Depends(get_publisher),
):
    """
    Publish a stored panorama to Instagram.

    A refusal from the Graph API is a normal outcome and comes back as
    ``{"success": false, "error": ...}`` with status 200.
    """
    logger.info(f"Instagram publish requested for image {request.image_id} by {user_id}")
    result = publisher.publish(request.image_id, caption=request.caption, posted_by=user_id)
    return result.as_response()
