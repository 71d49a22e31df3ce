# Constants.py
# Description: Widget ids and fixed choices for the Atlas Board UI
#
########################################################################################################################

# Regions offered by the filter (countries may use others; the filter simply won't list them)
REGIONS = ["Africa", "Americas", "Asia", "Europe", "Oceania"]
ALL_REGIONS_LABEL = "All regions"

# Widget ids
ID_SEARCH_INPUT = "search-input"
ID_REGION_FILTER = "region-filter"
ID_ONLINE_SWITCH = "online-switch"
ID_COUNTRY_LIST = "country-list"
ID_MESSAGE_LIST = "message-list"
ID_TOP_LIKED = "top-liked"
ID_SYNC_STATUS = "sync-status"
ID_LOG_DISPLAY = "app-log-display"

ID_COUNTRY_NAME = "country-name-input"
ID_COUNTRY_REGION = "country-region-input"
ID_COUNTRY_CAPITAL = "country-capital-input"
ID_COUNTRY_SAVE = "country-save-button"
ID_COUNTRY_DELETE = "country-delete-button"
ID_COUNTRY_EDIT = "country-edit-button"

ID_MESSAGE_TITLE = "message-title-input"
ID_MESSAGE_CONTENT = "message-content-input"
ID_MESSAGE_SAVE = "message-save-button"
ID_MESSAGE_LIKE = "message-like-button"
ID_MESSAGE_DELETE = "message-delete-button"
ID_MESSAGE_EDIT = "message-edit-button"

ID_COMMENT_AUTHOR = "comment-author-input"
ID_COMMENT_CONTENT = "comment-content-input"
ID_COMMENT_LIST = "comment-list"
ID_COMMENT_SAVE = "comment-save-button"
ID_COMMENT_EDIT = "comment-edit-button"
ID_COMMENT_DELETE = "comment-delete-button"

ID_ATTACHMENT_PATH = "attachment-path-input"
ID_ATTACHMENT_ADD = "attachment-add-button"
ID_ATTACHMENT_PREVIEW = "attachment-preview"

#
# End of Constants.py
########################################################################################################################
