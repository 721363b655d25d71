# savethesquare/blueprints/__init__.py
