"""MCP tool definitions for feedback collection.

Exposed:
    interactive_feedback

The tool blocks until a respondent submits on the web page, the
configured timeout elapses, or the server shuts down.
"""
from __future__ import annotations

import base64
from datetime import datetime
from typing import TYPE_CHECKING

from mcp.server.fastmcp import Context, FastMCP
from mcp.types import ImageContent, TextContent

from ..errors import FeedbackError

if TYPE_CHECKING:
    from ..bridge import FeedbackBridge
    from ..models import Submission


def _get_bridge(ctx: Context) -> FeedbackBridge:
    """Get FeedbackBridge from lifespan context."""
    return ctx.request_context.lifespan_context["bridge"]


def _describe_size(size: int) -> str:
    if size >= 1024 * 1024:
        return f"{size / 1024 / 1024:.1f} MB"
    return f"{size / 1024:.1f} KB"


def format_feedback_result(
    submissions: list[Submission],
) -> list[TextContent | ImageContent]:
    """Text blocks describing every submission, then one block per image."""
    lines = [f"Received {len(submissions)} feedback item(s)"]
    images: list[ImageContent] = []

    for index, submission in enumerate(submissions, start=1):
        lines.append("")
        lines.append(f"--- Feedback #{index} ---")
        if submission.text:
            lines.append(f"Text: {submission.text}")
        if submission.attachments:
            lines.append(f"Attachments: {len(submission.attachments)}")
            for n, attachment in enumerate(submission.attachments, start=1):
                lines.append(
                    f"  {n}. {attachment.name} "
                    f"({attachment.mime_type}, {_describe_size(attachment.size)})"
                )
                if attachment.is_image:
                    images.append(ImageContent(
                        type="image",
                        data=base64.b64encode(attachment.data).decode("ascii"),
                        mimeType=attachment.mime_type,
                    ))
        submitted = datetime.fromtimestamp(submission.timestamp)
        lines.append(f"Submitted at: {submitted.isoformat(sep=' ', timespec='seconds')}")

    return [TextContent(type="text", text="\n".join(lines)), *images]


def register_tools(mcp: FastMCP) -> None:
    """Register the feedback tools with the FastMCP instance."""

    @mcp.tool(
        name="interactive_feedback",
        description=(
            "Collect feedback from a human about work you have done. "
            "Pass a summary of the work as 'prompt'. A web page shows the "
            "summary and the respondent replies with text and/or images. "
            "The call blocks until the respondent submits or the "
            "configured timeout elapses."
        ),
    )
    async def interactive_feedback(
        prompt: str,
        ctx: Context = None,
    ):
        bridge = _get_bridge(ctx)

        async def _report_url(url: str) -> None:
            await ctx.info(f"Waiting for feedback at {url}")

        try:
            submissions = await bridge.collect_feedback(prompt, on_url=_report_url)
        except FeedbackError as exc:
            raise ValueError(str(exc)) from exc
        return format_feedback_result(submissions)
