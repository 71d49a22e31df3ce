# atlas_board/DB/__init__.py
