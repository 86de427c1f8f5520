"""状态：Persistence 协议、run 状态存储与活跃 run 表。"""
