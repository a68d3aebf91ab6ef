"""Tests for rich-text content helpers."""
from support_workflow.content import (
    convert_to_multimodal_message,
    extract_image_urls,
    extract_text_without_images,
    get_text_with_image_info,
    message_plain_text,
    to_rich_text,
)


def paragraph(text):
    return {"type": "paragraph", "content": [{"type": "text", "text": text}]}


DOC = {
    "type": "doc",
    "content": [
        {"type": "heading", "attrs": {"level": 2}, "content": [{"type": "text", "text": "问题"}]},
        paragraph("DevBox 启动失败"),
        {"type": "image", "attrs": {"src": "https://img/1.png"}},
        {
            "type": "orderedList",
            "content": [
                {"type": "listItem", "content": [paragraph("打开控制台")]},
                {"type": "listItem", "content": [paragraph("点击重启")]},
            ],
        },
        {"type": "codeBlock", "attrs": {"language": "bash"}, "content": [{"type": "text", "text": "kubectl get pods"}]},
        {"type": "paragraph", "content": [{"type": "image", "attrs": {"src": "https://img/2.png"}}]},
    ],
}


class TestRichText:
    """Test TipTap document helpers."""

    def test_extract_image_urls_in_order(self):
        assert extract_image_urls(DOC) == ["https://img/1.png", "https://img/2.png"]
        assert extract_image_urls("plain text") == []

    def test_text_without_images(self):
        text = extract_text_without_images(DOC)

        assert text.startswith("## 问题\nDevBox 启动失败")
        assert "1. 打开控制台\n" in text
        assert "2. 点击重启" in text
        assert "```bash\nkubectl get pods\n```" in text
        assert "img/1.png" not in text

    def test_plain_strings_pass_through(self):
        assert extract_text_without_images("  你好  ") == "你好"
        assert extract_text_without_images(None) == ""

    def test_text_with_image_info(self):
        content = {"type": "doc", "content": [paragraph("截图"), {"type": "image", "attrs": {"src": "u"}}]}

        assert get_text_with_image_info(content) == "截图 [图片: u]"

    def test_multimodal_conversion(self):
        assert convert_to_multimodal_message({"type": "doc", "content": [paragraph("只有文字")]}) == "只有文字"

        parts = convert_to_multimodal_message({"type": "doc", "content": [{"type": "image", "attrs": {"src": "u"}}]})

        assert parts == [{"type": "image_url", "image_url": {"url": "u"}}]

    def test_message_plain_text(self):
        parts = [{"type": "text", "text": "看图"}, {"type": "image_url", "image_url": {"url": "u"}}]

        assert message_plain_text(parts) == "看图 [图片]"
        assert message_plain_text("文字") == "文字"

    def test_to_rich_text(self):
        assert to_rich_text("") == {"type": "doc", "content": []}
        assert to_rich_text("   ") == {"type": "doc", "content": []}
        assert to_rich_text("好的") == {
            "type": "doc",
            "content": [{"type": "paragraph", "content": [{"type": "text", "text": "好的"}]}],
        }
