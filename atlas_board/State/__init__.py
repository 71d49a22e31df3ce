# atlas_board/State/__init__.py
