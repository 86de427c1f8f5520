"""配置加载（YAML + pydantic）。"""
