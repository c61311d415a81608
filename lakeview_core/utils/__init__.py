"""Shared utilities: result containers, validation, exports, geometry"""
