from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from common.schemas import SummaryContext, SummaryOptions, TranscriptionResult, TranscriptSegment

SYSTEM_PROMPT = """\
You are a meticulous teaching assistant who writes lecture notes.
Summarize strictly from the provided transcript and never invent facts.
If information is missing, write "Not mentioned in the transcript".
Write concise, well-structured Markdown that is easy to review.
"""

DEFAULT_TEMPLATE = """\
# {{course_name}} lecture notes ({{date}})

Produce structured notes from the lecture transcript in Markdown with these four sections:
1. Key points: 3-6 items capturing the most important conclusions.
2. Detailed content (with timestamps): bullet points by topic, each anchored with [HH:MM:SS] where possible.
3. Glossary: each term with a short explanation and how it was used in the lecture.
4. Review suggestions: concrete review steps and practice ideas.

Lecture length: {{duration}}"""

MAX_TRANSCRIPT_CHARS = 60_000


@dataclass
class SummaryPrompts:
    system_prompt: str
    user_prompt: str


def build_summary_prompts(transcription: TranscriptionResult, options: SummaryOptions) -> SummaryPrompts:
    template = resolve_template(options.template, options.context)
    return SummaryPrompts(
        system_prompt=SYSTEM_PROMPT,
        user_prompt=build_user_prompt(format_transcript(transcription), template, options.context),
    )


def build_user_prompt(formatted_transcript: str, template: str, context: SummaryContext) -> str:
    return f"""\
Write the lecture notes strictly following the template below.

[Template]
{template}

[Lecture]
Course: {context.course_name}
Date: {context.date}
Duration: {context.duration}

[Transcript]
{formatted_transcript}"""


def resolve_template(template: Optional[str], context: SummaryContext) -> str:
    raw = (template or "").strip() or DEFAULT_TEMPLATE
    return (
        raw.replace("{{course_name}}", context.course_name)
        .replace("{{date}}", context.date)
        .replace("{{duration}}", context.duration)
    )


def format_transcript(transcription: TranscriptionResult) -> str:
    text = format_segments(transcription.segments) or transcription.full_text.strip()
    if not text:
        return "(empty transcript)"
    if len(text) <= MAX_TRANSCRIPT_CHARS:
        return text
    return f"{text[:MAX_TRANSCRIPT_CHARS]}\n\n[Note] The transcript was too long and has been truncated."


def format_segments(segments: list[TranscriptSegment]) -> str:
    lines = []
    for seg in segments:
        text = seg.text.strip()
        if text:
            lines.append(f"[{format_clock(seg.start)}] {text}")
    return "\n".join(lines)


def format_clock(seconds: float) -> str:
    total = int(max(0.0, seconds))
    return f"{total // 3600:02d}:{total % 3600 // 60:02d}:{total % 60:02d}"


def build_chunk_template(index: int, total: int) -> str:
    return "\n".join([
        f"You are processing part {index}/{total} of a lecture transcript.",
        "Write partial notes for this part only; they will be merged later.",
        "Use Markdown with these sections:",
        "1. Topic of this part",
        "2. Key points (3-5 items)",
        "3. Notable timestamps (if any)",
        "4. Open questions or likely misunderstandings in this part",
        "Do not attempt to draw final conclusions for the whole lecture.",
    ])


def build_merge_template(custom_template: Optional[str]) -> str:
    base = "\n".join([
        "Merge the partial notes below into one complete set of lecture notes.",
        "Use Markdown with these sections:",
        "1. Key points",
        "2. Detailed content (with timestamps)",
        "3. Glossary",
        "4. Review suggestions",
        "Where partial notes conflict, give the most defensible unified statement.",
    ])
    custom = (custom_template or "").strip()
    if not custom:
        return base
    return "\n".join([
        base,
        "",
        "Where it does not contradict the sections above, also follow this template:",
        custom,
        "",
        "You may adjust the structure for readability as long as the facts are preserved.",
    ])
