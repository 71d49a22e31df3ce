# atlas_board/Event_Handlers/__init__.py
