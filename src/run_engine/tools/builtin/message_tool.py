"""
MessageTool：与用户交互并结束/暂停 run 的内置工具。

操作：
- ask：向用户提问并暂停 run（STOPPED + "Awaiting user input for ask"）
- complete：声明任务完成（COMPLETED）
- web_browser_takeover：请求用户接管浏览器（暂停 run）
"""

from __future__ import annotations

from typing import Any, List, Optional

from run_engine.tools.capability import OperationSet, ToolCapability
from run_engine.tools.protocol import TerminalSignal, ToolResult, XmlNodeMapping

_ASK_EXAMPLE = """<ask attachments="report.md">
Which of the two layouts should I keep?
</ask>"""

_COMPLETE_EXAMPLE = "<complete>\n</complete>"

_TAKEOVER_EXAMPLE = """<web-browser-takeover>
Please solve the CAPTCHA in the open browser tab, then tell me when you are done.
</web-browser-takeover>"""


def _split_attachments(attachments: Optional[object]) -> List[str]:
    """把逗号分隔字符串或列表规范化为附件路径列表。"""

    if attachments is None:
        return []
    if isinstance(attachments, str):
        return [a.strip() for a in attachments.split(",") if a.strip()]
    if isinstance(attachments, (list, tuple)):
        return [str(a).strip() for a in attachments if str(a).strip()]
    return [str(attachments)]


class MessageTool(ToolCapability):
    """用户交互工具（ask / complete / web-browser-takeover）。"""

    tool_name = "message"

    def declare_operations(self, ops: OperationSet) -> None:
        """声明三个操作，均同时暴露 function 与 XML 风格。"""

        text_mappings = [
            XmlNodeMapping(param_name="text", node_type="content", required=False),
            XmlNodeMapping(param_name="attachments", node_type="attribute", required=False),
        ]
        (
            ops.operation(
                "ask",
                self.ask,
                description="Ask the user a question and wait for the answer. Use only when user input is essential.",
            )
            .param("text", str, description="Question to show the user")
            .param("attachments", Any, required=False, description="Files or URLs to show with the question")
            .function()
            .xml("ask", mappings=text_mappings, example=_ASK_EXAMPLE)
        )
        (
            ops.operation("complete", self.complete, description="Declare the task finished.")
            .param("text", str, required=False, description="Optional closing summary")
            .param("attachments", Any, required=False)
            .function()
            .xml("complete", mappings=text_mappings, example=_COMPLETE_EXAMPLE)
        )
        (
            ops.operation(
                "web_browser_takeover",
                self.web_browser_takeover,
                description="Hand the browser over to the user for a step the agent cannot perform.",
            )
            .param("text", str, description="Instructions for the user")
            .param("attachments", Any, required=False)
            .function()
            .xml("web-browser-takeover", mappings=text_mappings, example=_TAKEOVER_EXAMPLE)
        )

    def ask(self, text: Optional[str], attachments: Optional[object] = None) -> ToolResult:
        """暂停 run 等待用户回答。"""

        if not text:
            return ToolResult.error_payload(error_kind="validation", error="ask requires non-empty text")
        return ToolResult.ok_payload(
            output={"status": "Awaiting user response..."},
            data={"tool": "ask", "text": text, "attachments": _split_attachments(attachments)},
            terminal_signal=TerminalSignal.PAUSED,
        )

    def complete(self, text: Optional[str] = None, attachments: Optional[object] = None) -> ToolResult:
        """结束 run（COMPLETED）。"""

        return ToolResult.ok_payload(
            output={"status": "complete"},
            data={"tool": "complete", "text": text or "", "attachments": _split_attachments(attachments)},
            terminal_signal=TerminalSignal.COMPLETED,
        )

    def web_browser_takeover(self, text: Optional[str], attachments: Optional[object] = None) -> ToolResult:
        """暂停 run，请用户接管浏览器。"""

        if not text:
            return ToolResult.error_payload(error_kind="validation", error="web_browser_takeover requires instructions")
        return ToolResult.ok_payload(
            output={"status": "Awaiting user browser takeover..."},
            data={"tool": "web-browser-takeover", "text": text, "attachments": _split_attachments(attachments)},
            terminal_signal=TerminalSignal.PAUSED,
        )
