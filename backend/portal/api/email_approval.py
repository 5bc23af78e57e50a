"""Token-gated approve/decline endpoint reached from links in approval emails.

GET only renders a confirmation page (approve) or a reason form (decline);
POST performs the action. Responses are HTML for people reading them in a
browser, except unexpected failures which answer 500 with a JSON body.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Request, status
from fastapi.responses import HTMLResponse, JSONResponse

from portal.api.deps import SESSION_DEP
from portal.core.logging import get_logger
from portal.services.email_approval import (
    EmailApprovalPage,
    EmailApprovalRejected,
    load_email_approval,
    render_email_approval_form,
    submit_email_approval,
)

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

logger = get_logger(__name__)
router = APIRouter(prefix="/email-approval", tags=["email-approval"])

_PARAM_NAMES = ("requestId", "action", "managerEmail", "token")


def _html(page: EmailApprovalPage) -> HTMLResponse:
    return HTMLResponse(content=page.html, status_code=page.status_code)


def _unexpected(exc: Exception) -> JSONResponse:
    logger.exception("email_approval.failed", extra={"error": str(exc)})
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": str(exc) or exc.__class__.__name__},
    )


@router.get("", response_class=HTMLResponse, response_model=None)
async def email_approval_form(
    request: Request,
    session: AsyncSession = SESSION_DEP,
) -> HTMLResponse | JSONResponse:
    """Render the confirmation or decline-reason page. Never mutates state."""
    params = request.query_params
    try:
        ctx = await load_email_approval(
            session,
            request_id=params.get("requestId"),
            action=params.get("action"),
            manager_email=params.get("managerEmail"),
            token=params.get("token"),
        )
        return _html(render_email_approval_form(ctx))
    except EmailApprovalRejected as rejected:
        return _html(rejected.page)
    except Exception as exc:
        return _unexpected(exc)


@router.post("", response_class=HTMLResponse, response_model=None)
async def email_approval_submit(
    request: Request,
    session: AsyncSession = SESSION_DEP,
) -> HTMLResponse | JSONResponse:
    """Apply the approve/decline action from a confirmed email link."""
    try:
        form = await request.form()
        values: dict[str, str | None] = {}
        for name in _PARAM_NAMES:
            raw = request.query_params.get(name) or form.get(name)
            values[name] = raw if isinstance(raw, str) else None
        reason = form.get("reason")
        ctx = await load_email_approval(
            session,
            request_id=values["requestId"],
            action=values["action"],
            manager_email=values["managerEmail"],
            token=values["token"],
        )
        page = await submit_email_approval(
            session,
            ctx,
            reason=reason if isinstance(reason, str) else None,
        )
        return _html(page)
    except EmailApprovalRejected as rejected:
        return _html(rejected.page)
    except Exception as exc:
        return _unexpected(exc)
