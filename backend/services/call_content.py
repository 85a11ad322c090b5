"""
Text builders for call and message log entries.

Source systems disagree on what a note body may contain: some render
markdown, some HTML, some only plain text. ``get_format_options`` picks the
line breaks, bold, link and emoji conventions; every builder below takes the
resulting ``FormatOptions`` so one code path serves all three.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Optional

FormatMethod = Literal["markdown", "html", "plainText"]

_EMOJI: dict[str, str] = {
    "call": "☎️",
    "message": "💬",
    "recording": "▶️",
    "voicemail": "➿",
}
_NO_EMOJI: dict[str, str] = {key: "" for key in _EMOJI}


@dataclass(frozen=True)
class FormatOptions:
    format_method: str
    line_break: str
    line_break_double: str
    bold: Callable[[str], str]
    link: Callable[[str, str], str]
    emoji: dict[str, str] = field(default_factory=dict)


def get_format_options(format_method: str = "markdown") -> FormatOptions:
    if format_method == "html":
        return FormatOptions(
            format_method="html",
            line_break="<br>",
            line_break_double="<br><br>",
            bold=lambda text: f"<strong>{text}</strong>",
            link=lambda text, url: f'<a href="{url}" target="_blank">{text}</a>',
            emoji=dict(_EMOJI),
        )
    if format_method == "plainText":
        return FormatOptions(
            format_method="plainText",
            line_break="\r\n",
            line_break_double="\r\n\r\n",
            bold=lambda text: text,
            link=lambda text, url: f"{text}: {url}",
            emoji=dict(_NO_EMOJI),
        )
    return FormatOptions(
        format_method="markdown",
        line_break="\n",
        line_break_double="\n\n",
        bold=lambda text: f"**{text}**",
        link=lambda text, url: f"[{text}]({url})",
        emoji=dict(_EMOJI),
    )


# ---------------------------------------------------------------------------
# Durations and recordings
# ---------------------------------------------------------------------------


def format_duration(seconds: Optional[float]) -> str:
    """Seconds → ``m:ss``."""
    if not seconds or seconds < 0:
        return "0:00"
    mins = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{mins}:{secs:02d}"


def _recording_link(text: str, url: str, format_method: str) -> str:
    if format_method == "html":
        return f'<a href="{url}" target="_blank">{text}</a>'
    if format_method == "plainText":
        return f"{text}: {url}"
    return f"[{text}]({url})"


def format_call_recordings(
    recordings: Optional[list[dict[str, Any]]],
    call_duration: Optional[int] = None,
    format_method: str = "markdown",
) -> Optional[str]:
    """One recording → a single labelled link; several → ``Part N`` links joined by ``|``."""
    if not recordings:
        return None

    if len(recordings) == 1:
        recording = recordings[0]
        duration = format_duration(recording.get("duration") or call_duration or 0)
        label = (
            f"Recording ({duration})"
            if format_method == "plainText"
            else f"▶️ Recording ({duration})"
        )
        if recording.get("url"):
            return _recording_link(label, recording["url"], format_method)
        return label

    parts: list[str] = []
    for index, recording in enumerate(recordings, start=1):
        label = f"Part {index} ({format_duration(recording.get('duration') or 0)})"
        if recording.get("url"):
            parts.append(_recording_link(label, recording["url"], format_method))
        else:
            parts.append(label)

    prefix = "Recordings:" if format_method == "plainText" else "▶️ Recordings:"
    return f"{prefix} {' | '.join(parts)}"


# ---------------------------------------------------------------------------
# Calls
# ---------------------------------------------------------------------------


def _was_answered(call: dict[str, Any]) -> bool:
    return call.get("answeredAt") is not None


def build_call_status(call: dict[str, Any], user_name: str) -> str:
    """One-line description of how the call went."""
    status = call.get("status")
    direction = call.get("direction")
    answered = _was_answered(call)

    if call.get("aiHandled") == "ai-agent":
        return "Handled by Sona"

    if status == "completed" and answered:
        if direction == "outgoing":
            return f"Outgoing initiated by {user_name}"
        return f"Incoming answered by {user_name}"

    if status in ("no-answer", "missed") or (
        status == "completed" and not answered and direction == "incoming"
    ):
        return "Incoming missed"

    if status == "completed" and not answered and direction == "outgoing":
        return f"Outgoing initiated by {user_name} (not answered)"

    if status == "forwarded":
        if call.get("forwardedTo"):
            return f"Incoming forwarded to {call['forwardedTo']}"
        return "Incoming forwarded by phone menu"

    return f"{'Outgoing' if direction == 'outgoing' else 'Incoming'} {status}"


def build_recording_suffix(call: dict[str, Any], options: FormatOptions) -> str:
    duration = call.get("duration") or 0
    if call.get("status") != "completed" or duration <= 0 or not _was_answered(call):
        return ""
    emoji = options.emoji.get("recording")
    label = f"{emoji} Recording" if emoji else "Recording"
    return f" / {label} ({format_duration(duration)})"


def build_voicemail_section(voicemail: Optional[dict[str, Any]], options: FormatOptions) -> str:
    if not voicemail or not voicemail.get("duration"):
        return ""

    duration = format_duration(voicemail["duration"])
    url = voicemail.get("url") or voicemail.get("recordingUrl")
    emoji = options.emoji.get("voicemail")
    label = f"{emoji} Voicemail" if emoji else "Voicemail"

    section = options.line_break_double + options.bold("Voicemail:") + options.line_break
    if url:
        section += f"• {options.link('Listen to voicemail', url)} ({duration}){options.line_break}"
    else:
        section += f"• {label} ({duration}){options.line_break}"

    if voicemail.get("transcript"):
        section += (
            options.line_break
            + options.bold("Transcript:")
            + options.line_break
            + voicemail["transcript"]
        )
    return section


def build_deep_link(deep_link: str, options: FormatOptions, activity_type: str = "call") -> str:
    text = (
        "View the message activity in Quo"
        if activity_type == "message"
        else "View the call activity in Quo"
    )
    return f"{options.line_break_double}{options.link(text, deep_link)}"


def build_call_content(
    call: dict[str, Any],
    user_name: str,
    deep_link: str,
    options: FormatOptions,
) -> str:
    """Body of the first (un-enriched) call log entry."""
    content = build_call_status(call, user_name)
    content += build_recording_suffix(call, options)
    content += build_voicemail_section(call.get("voicemail"), options)
    content += build_deep_link(deep_link, options)
    return f"<span>{content}</span>" if options.format_method == "html" else content


def build_call_title(
    call: dict[str, Any],
    inbox_name: str,
    inbox_number: str,
    contact_phone: str,
    options: Optional[FormatOptions] = None,
    use_emoji: bool = True,
) -> str:
    outgoing = call.get("direction") == "outgoing"
    if use_emoji:
        emoji = (options or get_format_options()).emoji.get("call")
        prefix = f"{emoji}  " if emoji else ""
        if outgoing:
            return f"{prefix}Call {inbox_name} {inbox_number} → {contact_phone}"
        return f"{prefix}Call {contact_phone} → {inbox_name} {inbox_number}"

    if outgoing:
        return f"Call from {inbox_number} to {contact_phone}"
    return f"Call from {contact_phone} to {inbox_number}"


def build_enriched_call_content(
    call: dict[str, Any],
    user_name: str,
    deep_link: str,
    summary: list[str],
    next_steps: list[str],
    recordings: list[dict[str, Any]],
    voicemail: Optional[dict[str, Any]],
    options: FormatOptions,
) -> str:
    """Body of the enriched call log entry written once the summary lands."""
    lb, lb2, bold = options.line_break, options.line_break_double, options.bold

    content = build_call_status(call, user_name)

    formatted = format_call_recordings(recordings, call.get("duration"), options.format_method)
    if formatted:
        content += f" / {formatted}"

    if voicemail:
        content += build_voicemail_section(voicemail, options)

    if summary:
        content += lb2 + bold("Summary:") + lb
        content += "".join(f"• {point}{lb}" for point in summary)

    if next_steps:
        content += lb + bold("Next Steps:") + lb
        content += "".join(f"• {step}{lb}" for step in next_steps)

    content += build_deep_link(deep_link, options)
    return f"<span>{content}</span>" if options.format_method == "html" else content


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


def build_message_title(
    message: dict[str, Any],
    inbox_name: str,
    inbox_number: str,
    contact_phone: str,
    options: Optional[FormatOptions] = None,
    use_emoji: bool = True,
) -> str:
    outgoing = message.get("direction") == "outgoing"
    if use_emoji:
        emoji = (options or get_format_options()).emoji.get("message")
        prefix = f"{emoji} " if emoji else ""
        if outgoing:
            return f"{prefix}Message {inbox_name} {inbox_number} → {contact_phone}"
        return f"{prefix}Message {contact_phone} → {inbox_name} {inbox_number}"

    if outgoing:
        return f"Message from {inbox_number} to {contact_phone}"
    return f"Message from {contact_phone} to {inbox_number}"


def build_message_content(
    message: dict[str, Any],
    user_name: str,
    deep_link: str,
    options: FormatOptions,
) -> str:
    text = message.get("text") or "(no text)"
    deep_link_line = options.link("View the message activity in Quo", deep_link)
    if message.get("direction") == "outgoing":
        content = f"{user_name} sent: {text}{options.line_break_double}{deep_link_line}"
    else:
        content = f"Received: {text}{options.line_break_double}{deep_link_line}"
    return f"<span>{content}</span>" if options.format_method == "html" else content


# ---------------------------------------------------------------------------
# Display names
# ---------------------------------------------------------------------------


def build_inbox_name(phone_number: Optional[dict[str, Any]], default: str = "Quo Line") -> str:
    data = phone_number or {}
    if data.get("symbol") and data.get("name"):
        return f"{data['symbol']} {data['name']}"
    return data.get("name") or default


def build_user_name(user: Optional[dict[str, Any]], default: str = "Quo User") -> str:
    data = user or {}
    full_name = f"{data.get('firstName') or ''} {data.get('lastName') or ''}".strip()
    return full_name or default
