"""包内静态资源（默认配置与默认系统提示）。"""
