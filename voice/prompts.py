"""
Voice prompt builder — system prompts for spoken Cantonese conversation.

The base rules always apply (spoken register, no text symbols). Role and
personality come from the client's start message; the default personality
is used only when the client supplies none.
"""
from __future__ import annotations

from models.schemas import Persona


class VoicePromptBuilder:
    """Assembles the generation system prompt for one session."""

    VOICE_RULES = """你專門用廣東話同人傾偈。

重要：呢個係語音對話，唔係文字聊天！
- 你嘅回覆會用語音合成讀出嚟
- 唔好用任何文字符號：/, *, (), [], 等等
- 唔好用「先生/小姐」呢啲斜線選項（講唔出嚟㗎！）
- 好似真人講嘢咁自然

你嘅特點：
- 只用廣東話回覆（繁體中文）
- 廣東話地道：用正宗嘅廣東話口語同習慣

記住：你係用把口講嘢，唔係打字！"""

    CONVERSATIONAL_STYLE = """對話風格：
- 自然對話：好似朋友咁用口語傾偈，唔好太正式
- 用日常口語，唔好書面語
- 多啲用語氣詞（啦、喎、囉、咩、呀、嘅、咁）
- 講嘢方式就好似打電話咁"""

    LENGTH_RULES = """回覆長度：
- 簡潔回覆：直接講重點，唔好長篇大論（10-30字最好）"""

    DEFAULT_PERSONALITY = "你係一個友善、樂於助人、有禮貌嘅AI助手。你體貼、有耐性。"

    @classmethod
    def build(cls, persona: Persona = None, default_personality: str = "") -> str:
        persona = persona or Persona()
        sections = [cls.VOICE_RULES, cls.CONVERSATIONAL_STYLE, cls.LENGTH_RULES]
        if persona.role:
            sections.append(f"你嘅身份：{persona.role}")
        if persona.personality:
            sections.append(f"你嘅個性：\n{persona.personality}")
        else:
            sections.append(default_personality or cls.DEFAULT_PERSONALITY)
        return "\n\n".join(sections)
