#!/usr/bin/env python3

"""
Export Service - renders a session as markdown, html, plain text or json
and reads json exports back
"""

import html
import json
from typing import List

import markdown
import structlog

from ..exceptions import InvalidFormatError, SessionExportError, SessionImportError
from .models.llm_models import MessageRole
from .models.session_models import ExportFormat, Message, Session

log = structlog.get_logger(__name__)

ROLE_HEADINGS = {
    MessageRole.USER: "🧑‍💻 User",
    MessageRole.ASSISTANT: "🤖 Assistant",
    MessageRole.SYSTEM: "⚙️ System",
}

_DATE_FORMAT = "%Y-%m-%d %H:%M"
_EXTENSIONS = ["fenced_code", "tables", "sane_lists"]

HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>{title}</title>
<style>
    body {{ font-family: -apple-system, Helvetica, Arial, sans-serif; max-width: 860px; margin: 24px auto; padding: 0 16px; line-height: 1.5; }}
    pre {{ background-color: rgba(128, 128, 128, 0.1); padding: 10px; overflow-x: auto; }}
    code {{ font-family: Menlo, Consolas, monospace; }}
    table {{ border-collapse: collapse; margin: 10px 0; }}
    th, td {{ border: 1px solid rgba(128, 128, 128, 0.4); padding: 6px 10px; text-align: left; }}
    hr {{ border: none; border-top: 1px solid rgba(128, 128, 128, 0.4); margin: 20px 0; }}
</style>
</head>
<body>
{body}
</body>
</html>
"""


class SessionExporter:
    """Stateless session renderer"""

    def export(self, session: Session, export_format: ExportFormat) -> bytes:
        try:
            if export_format is ExportFormat.MARKDOWN:
                text = self.to_markdown(session)
            elif export_format is ExportFormat.HTML:
                text = self.to_html(session)
            elif export_format is ExportFormat.PLAIN_TEXT:
                text = self.to_plain_text(session)
            elif export_format is ExportFormat.JSON:
                text = self.to_json(session)
            else:
                raise InvalidFormatError(f"Unsupported export format: {export_format}")
        except InvalidFormatError:
            raise
        except Exception as e:
            log.error("export.failed", session_id=session.id, format=export_format.value, error=str(e))
            raise SessionExportError(f"Failed to export session {session.id}: {e}") from e

        log.info("export.completed", session_id=session.id, format=export_format.value,
                 messages=len(session.messages))
        return text.encode('utf-8')

    def import_session(self, data: bytes, export_format: ExportFormat = ExportFormat.JSON) -> Session:
        """Parse an exported session. Only json carries enough structure to be read back."""
        if export_format is not ExportFormat.JSON:
            raise InvalidFormatError(f"Import is not supported for {export_format.display_name}")
        try:
            payload = json.loads(data.decode('utf-8') if isinstance(data, bytes) else data)
            if not isinstance(payload, dict):
                raise ValueError("expected a JSON object")
            return Session.from_dict(payload)
        except (ValueError, KeyError, TypeError) as e:
            log.error("import.failed", error=str(e))
            raise SessionImportError(f"Failed to import session: {e}") from e

    def to_markdown(self, session: Session) -> str:
        lines = [
            f"# {session.title}",
            "",
            f"**Created:** {session.created_at.strftime(_DATE_FORMAT)}",
            f"**Provider:** {session.provider_id}",
            f"**Model:** {session.model_id}",
            "",
        ]

        blocks = [self._markdown_message(message) for message in session.messages]
        if blocks:
            lines.append("---")
            lines.append("")
            lines.append("\n\n---\n\n".join(blocks))
            lines.append("")
        return "\n".join(lines)

    def _markdown_message(self, message: Message) -> str:
        parts: List[str] = [f"## {ROLE_HEADINGS[message.role]}"]

        if message.context_items:
            context_lines = ["**Context:**"]
            for item in message.context_items:
                context_lines.append(f"- `{item.display_name}` ({item.type.display_name})")
            parts.append("\n".join(context_lines))

        parts.append(message.content)

        if message.role is MessageRole.ASSISTANT and message.token_usage is not None:
            usage = message.token_usage
            parts.append(f"*Tokens: {usage.input} input, {usage.output} output, {usage.total} total*")

        return "\n\n".join(parts)

    def to_html(self, session: Session) -> str:
        body = markdown.markdown(self.to_markdown(session), extensions=_EXTENSIONS)
        return HTML_TEMPLATE.format(title=html.escape(session.title), body=body)

    def to_plain_text(self, session: Session) -> str:
        lines = [
            session.title,
            "=" * len(session.title),
            f"Created: {session.created_at.strftime(_DATE_FORMAT)}",
            f"Provider: {session.provider_id}",
            f"Model: {session.model_id}",
            "",
        ]
        for message in session.messages:
            stamp = message.timestamp.strftime(_DATE_FORMAT)
            lines.append(f"[{stamp}] {message.role.display_name}:")
            lines.append(message.content)
            if message.context_items:
                names = ", ".join(item.display_name for item in message.context_items)
                lines.append(f"(Context: {names})")
            lines.append("")
        return "\n".join(lines)

    @staticmethod
    def to_json(session: Session) -> str:
        return json.dumps(session.to_dict(), indent=2, ensure_ascii=False)
