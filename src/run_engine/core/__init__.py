"""核心：错误、数据契约、取消令牌、迭代分析与 run 编排。"""
