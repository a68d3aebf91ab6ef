"""Helpers for rich-text (TipTap JSON) message and ticket content.

Tickets and chat messages store their bodies as editor documents: nested
``{"type": ..., "content": [...], "attrs": {...}, "text": ...}`` nodes. The
workflow needs plain text for prompts, image URLs for vision models, and the
OpenAI multimodal message shape for chat history.
"""
import re
from typing import Any, Dict, List, Union

MultimodalPart = Dict[str, Any]
MessageContent = Union[str, List[MultimodalPart]]


def extract_image_urls(content: Any) -> List[str]:
    """Collect ``src`` of every image node in document order."""
    images: List[str] = []

    def walk(node: Any) -> None:
        if not isinstance(node, dict):
            return
        if node.get("type") == "image":
            src = (node.get("attrs") or {}).get("src")
            if src:
                images.append(src)
        for child in node.get("content") or []:
            walk(child)

    walk(content)
    return images


def extract_text_without_images(content: Any) -> str:
    """
    Render a document to plain text, dropping image nodes.

    Args:
        content: Rich-text document (a plain string is returned as-is)

    Returns:
        Text with markdown-ish markers for headings, lists, quotes and code
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content.strip()

    out: List[str] = []
    list_state = {"ordered": False, "counter": 1}

    def walk_children(node: Dict[str, Any], in_list: bool = False) -> None:
        for child in node.get("content") or []:
            walk(child, in_list)

    def walk(node: Any, in_list: bool = False) -> None:
        if not isinstance(node, dict):
            return
        node_type = node.get("type")
        attrs = node.get("attrs") or {}

        if node_type == "text":
            out.append(node.get("text") or "")
        elif node_type == "paragraph":
            walk_children(node, in_list)
            if not in_list:
                out.append("\n")
        elif node_type == "heading":
            out.append("#" * int(attrs.get("level") or 1) + " ")
            walk_children(node)
            out.append("\n")
        elif node_type == "hardBreak":
            out.append("\n")
        elif node_type == "bulletList":
            list_state["ordered"] = False
            walk_children(node)
            out.append("\n")
        elif node_type == "orderedList":
            list_state["ordered"] = True
            list_state["counter"] = int(attrs.get("start") or 1)
            walk_children(node)
            out.append("\n")
        elif node_type == "listItem":
            if list_state["ordered"]:
                out.append(f"{list_state['counter']}. ")
                list_state["counter"] += 1
            else:
                out.append("- ")
            walk_children(node, True)
            out.append("\n")
        elif node_type == "blockquote":
            out.append("> ")
            walk_children(node)
            out.append("\n")
        elif node_type == "codeBlock":
            out.append("\n```" + (attrs.get("language") or "") + "\n")
            walk_children(node)
            out.append("\n```\n")
        elif node_type == "horizontalRule":
            out.append("\n---\n")
        elif node_type == "image":
            pass
        else:
            walk_children(node, in_list)

    walk(content)
    text = "".join(out)
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def get_text_with_image_info(content: Any) -> str:
    """Plain text with ``[图片: url]`` markers appended for each image."""
    images = extract_image_urls(content)
    text = extract_text_without_images(content)
    if images:
        image_info = " ".join(f"[图片: {url}]" for url in images)
        text = f"{text} {image_info}" if text else image_info
    return text


def convert_to_multimodal_message(content: Any) -> MessageContent:
    """Plain text when there are no images, else OpenAI-style content parts."""
    images = extract_image_urls(content)
    text = extract_text_without_images(content)
    if not images:
        return text

    parts: List[MultimodalPart] = []
    if text.strip():
        parts.append({"type": "text", "text": text})
    for url in images:
        parts.append({"type": "image_url", "image_url": {"url": url}})
    return parts


def message_plain_text(content: MessageContent) -> str:
    """Flatten message content to text, rendering images as ``[图片]``."""
    if isinstance(content, str):
        return content
    return " ".join(
        part.get("text", "") if part.get("type") == "text" else "[图片]"
        for part in content
    )


def to_rich_text(text: str) -> Dict[str, Any]:
    """Wrap a model reply in a single-paragraph document (empty doc for blank text)."""
    if not text or not text.strip():
        return {"type": "doc", "content": []}
    return {
        "type": "doc",
        "content": [
            {"type": "paragraph", "content": [{"type": "text", "text": text}]}
        ],
    }
