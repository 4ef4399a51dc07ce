"""
Core（契约、错误、事件与 tool-call loop）。

说明：子模块按需直接导入（例如 `agent_control.core.tool_loop`），包级不做聚合导出，避免循环导入。
"""
