"""HTML reports and interactive maps"""
