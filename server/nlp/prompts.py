"""
Prompt模板管理

每个模板由 prompts/<name>.system.txt 与 prompts/<name>.user.txt 两个文件组成，
加载为 LangChain ChatPromptTemplate。模板中的字面花括号需写成 {{ }}。
"""
from typing import Dict, List
from pathlib import Path

from langchain_core.prompts import ChatPromptTemplate

from logs import setup_logger
from nlp.exceptions import PromptError

logger = setup_logger(__name__)

# LangChain 消息类型 -> Chat Completion 角色
_ROLE_MAP = {"system": "system", "human": "user", "ai": "assistant"}

RESPONSE_LENGTH_INSTRUCTIONS = {
    "brief": "3-4文（約100-150字）",
    "standard": "5-7文（約200-300字）",
    "detailed": "8-12文（約400-600字）",
}

EXAMPLE_AMOUNT_INSTRUCTIONS = {
    "few": "1つの具体例",
    "normal": "2つの具体例",
    "many": "3つ以上の具体例",
}


class PromptManager:
    """Prompt模板管理器（LangChain ChatPromptTemplate）"""

    def __init__(self, prompts_dir: Path = None):
        self.prompts_dir = prompts_dir or Path(__file__).parent / "prompts"
        self._prompts: Dict[str, ChatPromptTemplate] = {}
        self._load_prompts()

    def _load_prompts(self):
        """加载所有prompt模板为ChatPromptTemplate对象"""
        for system_path in sorted(self.prompts_dir.glob("*.system.txt")):
            name = system_path.name[:-len(".system.txt")]
            user_path = self.prompts_dir / f"{name}.user.txt"
            try:
                system_text = system_path.read_text(encoding="utf-8").strip()
                user_text = user_path.read_text(encoding="utf-8").strip()
            except OSError as e:
                logger.error(f"加载模板文件 {name} 失败: {e}")
                continue

            self._prompts[name] = ChatPromptTemplate.from_messages([
                ("system", system_text),
                ("human", user_text),
            ])
            logger.debug(f"加载Prompt模板: {name}")

    def get_prompt(self, name: str) -> ChatPromptTemplate:
        """
        获取prompt模板（ChatPromptTemplate对象）

        Raises:
            PromptError: 模板不存在时抛出
        """
        template = self._prompts.get(name)
        if not template:
            raise PromptError(f"Prompt模板 '{name}' 不存在")
        return template

    def render(self, name: str, **variables) -> List[Dict[str, str]]:
        """
        渲染模板为 Chat Completion 的 messages 列表

        Args:
            name: 模板名
            **variables: 模板变量

        Returns:
            [{"role": ..., "content": ...}, ...]

        Raises:
            PromptError: 模板不存在或缺少变量
        """
        template = self.get_prompt(name)
        try:
            messages = template.format_messages(**variables)
        except KeyError as e:
            raise PromptError(f"Prompt模板 '{name}' 缺少变量: {e}", cause=e)
        return [
            {"role": _ROLE_MAP.get(message.type, "user"), "content": message.content}
            for message in messages
        ]

    @property
    def names(self) -> List[str]:
        return list(self._prompts)


# 全局prompt管理器
prompt_manager = PromptManager()
