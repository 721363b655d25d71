# savethesquare/services/__init__.py
