"""CN Vidas consultation payment worker"""
