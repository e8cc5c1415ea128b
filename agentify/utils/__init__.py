"""通用校验与格式化工具。"""
