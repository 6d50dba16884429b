"""
Route modules for the dispatch API.
"""
