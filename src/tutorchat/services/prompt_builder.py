"""Builds the outbound chat request for a tutor turn."""

from typing import Dict, List, Sequence

from ..models.schemas import Persona, TranscriptEntry
from .llm_client import ChatMessage

SYSTEM_PROMPT_TEMPLATE = """You are {name}, an AI tutor specializing in {subject}.
Your personality is {personality} and you use a {teaching_style} teaching approach.

Background: {description}
Expertise: {expertise}

IMPORTANT: Enhance your responses with visual learning elements:
- Use relevant emojis throughout your explanations
- For math problems, describe visual representations and analogies
- Break down complex concepts into clear, visual steps
- Use formatting like bullet points, numbered lists, and spacing for clarity
- When explaining mathematical concepts, describe visual analogies (like apple division, pizza fractions, etc.)
- Be encouraging and use positive emojis to motivate learning
- For geometry, describe shapes and spatial relationships clearly
- For arithmetic, suggest counting objects or visual groupings
- Make learning fun and engaging with creative explanations

When students share homework images or documents, analyze them carefully and provide specific help with the problems shown. Reference specific parts of their work when giving feedback.

Always stay in character and provide helpful, educational responses that match your personality and teaching style.
Be encouraging, patient, and adapt your explanations to the student's level of understanding."""


def build_system_prompt(persona: Persona) -> str:
    return SYSTEM_PROMPT_TEMPLATE.format(
        name=persona.name,
        subject=persona.subject,
        personality=persona.personality or "friendly",
        teaching_style=persona.teaching_style or "patient, step-by-step",
        description=persona.description,
        expertise=persona.expertise,
    )


def flatten_history_entry(entry: TranscriptEntry) -> Dict[str, str]:
    """Flatten a prior entry to role + text, annotating its attachments inline."""
    content = entry.content
    for attachment in entry.attachments or []:
        if attachment.kind == "document" and attachment.extracted_text:
            content += f"\n[Document: {attachment.name}]\n{attachment.extracted_text}"
        else:
            content += f"\n[{attachment.kind}: {attachment.name}]"
    return {"role": entry.role, "content": content}


def build_turn_message(entry: TranscriptEntry) -> ChatMessage:
    """
    Build the model message for the newly submitted user entry.

    Image attachments become image parts; document text is inlined.
    """
    content = entry.content
    image_urls: List[str] = []

    for attachment in entry.attachments or []:
        if attachment.kind == "image":
            image_urls.append(attachment.url)
            content += f"\n\n[Student uploaded an image: {attachment.name}]"
        elif attachment.kind == "document" and attachment.extracted_text:
            content += (
                f"\n\n[Student uploaded a document: {attachment.name}]\n"
                f"Document content:\n{attachment.extracted_text}"
            )

    if not image_urls:
        return {"role": "user", "content": content}

    parts = [{"type": "text", "text": content}]
    parts.extend({"type": "image", "url": url} for url in image_urls)
    return {"role": "user", "content": parts}


def build_model_messages(
    persona: Persona,
    history: Sequence[TranscriptEntry],
    new_entry: TranscriptEntry,
    window: int = 10,
) -> List[ChatMessage]:
    """
    Assemble persona instructions, a bounded window of prior entries and the new turn.

    Args:
        persona: Tutor persona driving the system prompt
        history: Prior settled entries, oldest first, excluding ``new_entry``
        new_entry: The user entry being submitted
        window: Maximum number of prior entries to include
    """
    settled = [e for e in history if not e.is_placeholder and e.id != new_entry.id]
    recent = settled[-window:] if window > 0 else []

    messages: List[ChatMessage] = [{"role": "system", "content": build_system_prompt(persona)}]
    messages.extend(flatten_history_entry(e) for e in recent)
    messages.append(build_turn_message(new_entry))
    return messages
