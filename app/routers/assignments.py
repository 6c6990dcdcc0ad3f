"""
Assignments router: PATCH /v1/assignments/{id}/status (driver app)
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.middleware.auth import get_current_driver
from app.schemas.schemas import AssignmentStatusResponse, AssignmentStatusUpdate
from app.services.dispatch import advance_assignment

router = APIRouter(prefix="/v1/assignments", tags=["Assignments"])


@router.patch("/{assignment_id}/status", response_model=AssignmentStatusResponse)
async def update_assignment_status(
    assignment_id: str,
    payload: AssignmentStatusUpdate,
    db: AsyncSession = Depends(get_db),
    driver_id: str = Depends(get_current_driver),
):
    """Advance one step: assigned → accepted → en_route_pickup → arrived → in_progress → completed."""
    assignment, booking_status = await advance_assignment(
        db, assignment_id, payload.status.value, driver_id=driver_id
    )
    return AssignmentStatusResponse(
        assignment_id=assignment.id,
        booking_id=assignment.booking_id,
        status=assignment.status,
        booking_status=booking_status,
    )
