"""工作区文件协议与实现（本地目录 / 内存）。"""
