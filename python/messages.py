"""User-facing bot replies."""

SENDER_UNKNOWN = "Failed to find the sender of this message"
TAG_NOT_AUTHORIZED = "You're not authorized to tag stickers"
TAGGED_STICKER = "Tagged the sticker with the following tags:"
USERNAME_MISSING = "You must set a username (check your Telegram settings)"
NEED_APPROVAL = "Great! Now tell the admin to approve your request"
NOT_REGISTERED = "The specified user has not registered"
WRONG_ARGNUM = "Wrong number of arguments"
NO_PERM = "You're not supposed to do that"
NO_REPLY_STICKER = "Reply to a sticker with this command"
NO_TAGS = "Tell me which tags to add, e.g. /tag happy cat"
NO_STICKER_SET = "Tagging is only supported for stickers that are contained in sticker sets"
STICKER_UNTAGGED = "This sticker is not tagged"
UNTAG_SUCCESS = "Successfully removed the specified tags"
ALLOWED_USER = "Allowed {username} to tag stickers"
TAGS_ON_STICKER = "Tags on this sticker: {tags}"
TRY_AGAIN = "Something went wrong, please try again later"

HELP_TEXT = (
    "To search for stickers, simply tag the bot and type your keywords.\n\n"
    "Commands:\n"
    "/tag <tags> - tag a sticker with text description\n"
    "/untag <tags> - remove a tag from a sticker\n"
    "/listtags - list all tags associated with a sticker\n"
    "/register - register self as a tagger\n"
    "/allow <secret> <username> - allow a user to tag\n"
    "/help - get help message"
)
