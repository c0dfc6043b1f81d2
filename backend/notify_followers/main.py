# notify_followers/main.py
import functions_framework
import firebase_admin
from firebase_admin import credentials, firestore, messaging
from google.api_core import exceptions as gcp_exceptions
from google.cloud import secretmanager
from google.cloud.firestore_v1.base_query import FieldFilter
import json
import os
import sys

# Add parent directory to path to import shared modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
from utils.logging_utils import create_logger, log_function_call
from utils.firestore_event import decode_fields, document_id_from_name, event_payload_to_dict

# Create structured logger
log = create_logger('notify_followers')


def _env_flag(name, default):
    return os.environ.get(name, default).strip().lower() in ('1', 'true', 'yes')


FIRESTORE_PROJECT = os.environ.get('FIRESTORE_PROJECT') or os.environ.get('GOOGLE_CLOUD_PROJECT')
FIRESTORE_DATABASE = os.environ.get('FIRESTORE_DATABASE', '(default)')
FIREBASE_CREDENTIALS_SECRET = os.environ.get('FIREBASE_CREDENTIALS_SECRET')

# 'subcollection': restaurants/{id}/followers/{userId}
# 'following_array': users/{userId}.following contains the restaurant id
FOLLOWER_STRATEGY = os.environ.get('FOLLOWER_STRATEGY', 'subcollection')
DEDUP_ENABLED = _env_flag('DEDUP_ENABLED', 'true')
DEDUP_COLLECTION = os.environ.get('DEDUP_COLLECTION', 'video_notifications')
PRUNE_UNREGISTERED_TOKENS = _env_flag('PRUNE_UNREGISTERED_TOKENS', 'true')

USERS_COLLECTION = 'users'
RESTAURANTS_COLLECTION = 'restaurants'
FOLLOWERS_COLLECTION = 'followers'
TOKEN_FIELD = 'fcmToken'
FOLLOWING_FIELD = 'following'

# firebase_admin rejects multicast messages with more than 500 tokens
MAX_MULTICAST_TOKENS = 500

NOTIFICATION_TITLE = "{restaurant_name} just posted a new dish!"
NOTIFICATION_BODY = "Tap to see what's cooking."
CLICK_ACTION = 'FLUTTER_NOTIFICATION_CLICK'
ANDROID_CHANNEL_ID = 'new_videos'

_db = None


def get_firebase_credentials(secret_name):
    """Load a service account JSON stored in Secret Manager."""
    client = secretmanager.SecretManagerServiceClient()
    response = client.access_secret_version(name=secret_name)
    return json.loads(response.payload.data.decode("UTF-8"))


def init_firebase():
    """Initialize the default Firebase app once per process."""
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass

    options = {'projectId': FIRESTORE_PROJECT} if FIRESTORE_PROJECT else None
    if FIREBASE_CREDENTIALS_SECRET:
        cred = credentials.Certificate(get_firebase_credentials(FIREBASE_CREDENTIALS_SECRET))
        app = firebase_admin.initialize_app(cred, options)
        log.info("Firebase initialized with service account from Secret Manager")
    else:
        app = firebase_admin.initialize_app(options=options)
        log.info("Firebase initialized with application default credentials")
    return app


def get_db():
    """Process-wide Firestore client, created on first use."""
    global _db
    if _db is None:
        app = init_firebase()
        _db = firestore.client(app=app, database_id=FIRESTORE_DATABASE)
    return _db


def parse_video_event(cloud_event):
    """
    Extract the created video document from a Firestore CloudEvent.

    Returns:
        (video_id, video_data) for a creation event, where video_data is None
        when the event carries no document. Returns None when the event is
        not a creation (an oldValue is present).
    """
    payload = event_payload_to_dict(cloud_event.data)

    if payload.get('oldValue'):
        return None

    value = payload.get('value') or {}
    video_id = document_id_from_name(value.get('name'))
    if not video_id:
        try:
            video_id = document_id_from_name(cloud_event['subject'])
        except KeyError:
            video_id = None

    if 'fields' not in value:
        return video_id, None

    return video_id, decode_fields(value.get('fields'))


def claim_video(db, video_id, restaurant_id):
    """
    Create the dispatch record for a video.

    Returns the record's reference, or None when the record already exists
    (the event was delivered before).
    """
    dispatch_ref = db.collection(DEDUP_COLLECTION).document(video_id)
    try:
        dispatch_ref.create({
            'video_id': video_id,
            'restaurant_id': restaurant_id,
            'status': 'processing',
            'created_at': firestore.SERVER_TIMESTAMP
        })
    except gcp_exceptions.AlreadyExists:
        return None
    return dispatch_ref


def resolve_followers_from_subcollection(db, restaurant_id):
    """Followers are the document ids under restaurants/{id}/followers."""
    followers_ref = db.collection(RESTAURANTS_COLLECTION) \
        .document(restaurant_id) \
        .collection(FOLLOWERS_COLLECTION)
    user_ids = [doc.id for doc in followers_ref.stream()]
    if not user_ids:
        return []

    log.info(f"Found {len(user_ids)} follower ids for restaurant {restaurant_id}")

    # One batched read for all follower documents
    user_refs = [db.collection(USERS_COLLECTION).document(user_id) for user_id in user_ids]
    followers = []
    for snapshot in db.get_all(user_refs):
        if not snapshot.exists:
            log.warning(f"Follower {snapshot.id} has no user document")
            continue
        followers.append((snapshot.id, snapshot.to_dict() or {}))
    return followers


def resolve_followers_from_following_array(db, restaurant_id):
    """Followers are the users whose 'following' array contains the restaurant id."""
    query = db.collection(USERS_COLLECTION) \
        .where(filter=FieldFilter(FOLLOWING_FIELD, 'array_contains', restaurant_id))
    return [(doc.id, doc.to_dict() or {}) for doc in query.stream()]


FOLLOWER_RESOLVERS = {
    'subcollection': resolve_followers_from_subcollection,
    'following_array': resolve_followers_from_following_array,
}


def resolve_followers(db, restaurant_id, strategy=None):
    """Return (user_id, user_data) pairs for the followers of a restaurant."""
    strategy = strategy or FOLLOWER_STRATEGY
    resolver = FOLLOWER_RESOLVERS.get(strategy)
    if resolver is None:
        raise ValueError(f"Unknown follower strategy: {strategy}")
    return resolver(db, restaurant_id)


def extract_tokens(followers):
    """
    Collect the non-empty FCM tokens of the followers.

    Returns:
        tokens: list of tokens in follower order (duplicates kept)
        token_owners: token -> list of user ids holding it
    """
    tokens = []
    token_owners = {}
    for user_id, user_data in followers:
        token = user_data.get(TOKEN_FIELD)
        if not token:
            continue
        if not isinstance(token, str):
            log.warning(f"Ignoring non-string FCM token for user {user_id}")
            continue
        tokens.append(token)
        token_owners.setdefault(token, []).append(user_id)
    return tokens, token_owners


def build_message(tokens, restaurant_name, video_id):
    """Compose the multicast message announcing a new video."""
    return messaging.MulticastMessage(
        tokens=tokens,
        notification=messaging.Notification(
            title=NOTIFICATION_TITLE.format(restaurant_name=restaurant_name),
            body=NOTIFICATION_BODY
        ),
        data={
            'videoId': video_id,
            'click_action': CLICK_ACTION
        },
        android=messaging.AndroidConfig(
            priority='high',
            notification=messaging.AndroidNotification(channel_id=ANDROID_CHANNEL_ID)
        ),
        apns=messaging.APNSConfig(
            payload=messaging.APNSPayload(aps=messaging.Aps(sound='default'))
        )
    )


def send_multicast(tokens, restaurant_name, video_id):
    """
    Send the new-video notification to every token.

    Returns:
        (success_count, failure_count, unregistered_tokens)
    """
    success_count = 0
    failure_count = 0
    unregistered_tokens = []

    for start in range(0, len(tokens), MAX_MULTICAST_TOKENS):
        chunk = tokens[start:start + MAX_MULTICAST_TOKENS]
        message = build_message(chunk, restaurant_name, video_id)
        response = messaging.send_each_for_multicast(message)

        success_count += response.success_count
        failure_count += response.failure_count

        for token, send_response in zip(chunk, response.responses):
            if send_response.success:
                continue
            if isinstance(send_response.exception, messaging.UnregisteredError):
                unregistered_tokens.append(token)
            else:
                log.debug(f"Send failed: {send_response.exception}")

    return success_count, failure_count, unregistered_tokens


def prune_unregistered_tokens(db, unregistered_tokens, token_owners):
    """Remove tokens FCM reports as unregistered from the users holding them."""
    pruned = 0
    for token in set(unregistered_tokens):
        for user_id in token_owners.get(token, []):
            user_ref = db.collection(USERS_COLLECTION).document(user_id)
            try:
                snapshot = user_ref.get()
                # Leave tokens the user re-registered since the send
                if not snapshot.exists or (snapshot.to_dict() or {}).get(TOKEN_FIELD) != token:
                    continue
                user_ref.update({
                    TOKEN_FIELD: firestore.DELETE_FIELD,
                    'notification_status': 'token_expired'
                })
                pruned += 1
            except Exception as e:
                log.warning(f"Could not remove expired FCM token for user {user_id}: {str(e)}")
    return pruned


def _fan_out(db, video_id, restaurant_id, restaurant_name):
    followers = resolve_followers(db, restaurant_id)
    if not followers:
        log.info(f"No followers found for restaurant {restaurant_id}")
        return {'status': 'skipped', 'reason': 'no_followers'}

    tokens, token_owners = extract_tokens(followers)
    if not tokens:
        log.info("No valid FCM tokens found", {'follower_count': len(followers)})
        return {'status': 'skipped', 'reason': 'no_tokens', 'follower_count': len(followers)}

    log.info(f"Sending new video notification to {len(tokens)} devices")
    success_count, failure_count, unregistered_tokens = send_multicast(tokens, restaurant_name, video_id)

    log.info(f"Notifications sent: {success_count}")
    if failure_count > 0:
        log.warning(f"Failed notifications: {failure_count}", {
            'failure_count': failure_count,
            'unregistered_count': len(unregistered_tokens)
        })

    result = {
        'status': 'sent',
        'follower_count': len(followers),
        'token_count': len(tokens),
        'success_count': success_count,
        'failure_count': failure_count
    }

    if PRUNE_UNREGISTERED_TOKENS and unregistered_tokens:
        result['pruned_count'] = prune_unregistered_tokens(db, unregistered_tokens, token_owners)
        log.info(f"Removed {result['pruned_count']} expired FCM tokens")

    return result


def dispatch_new_video(video_id, video_data, db=None):
    """
    Notify the followers of a video's restaurant that the video was posted.

    Missing data, no followers and no tokens end the dispatch quietly. Errors
    from Firestore or FCM are logged and not raised, so the trigger is not
    retried into duplicate notifications.

    Returns:
        dict summary with 'status' of 'sent', 'skipped' or 'failed'
    """
    if not video_data:
        log.info("No data in created video document")
        return {'status': 'skipped', 'reason': 'missing_video_data'}

    restaurant_id = video_data.get('restaurantId')
    restaurant_name = video_data.get('restaurantName')

    if not restaurant_id or not restaurant_name:
        log.info("Missing restaurant details in video", {
            'has_restaurant_id': bool(restaurant_id),
            'has_restaurant_name': bool(restaurant_name)
        })
        return {'status': 'skipped', 'reason': 'missing_restaurant_details'}

    if not video_id:
        log.warning("Could not determine the video id from the event")
        return {'status': 'skipped', 'reason': 'missing_video_id'}

    log.set_context(video_id=video_id)
    dispatch_ref = None

    try:
        if db is None:
            db = get_db()

        if DEDUP_ENABLED:
            dispatch_ref = claim_video(db, video_id, restaurant_id)
            if dispatch_ref is None:
                log.info(f"Video {video_id} was already dispatched. Skipping.")
                return {'status': 'skipped', 'reason': 'already_dispatched'}

        result = _fan_out(db, video_id, restaurant_id, restaurant_name)

        if dispatch_ref is not None:
            dispatch_ref.update({**result, 'updated_at': firestore.SERVER_TIMESTAMP})

        return result

    except Exception as e:
        log.error(f"Error sending notification: {str(e)}", {
            'restaurant_id': restaurant_id,
            'error_type': type(e).__name__
        }, exc_info=True)

        if dispatch_ref is not None:
            try:
                dispatch_ref.update({
                    'status': 'failed',
                    'error': str(e),
                    'error_type': type(e).__name__,
                    'updated_at': firestore.SERVER_TIMESTAMP
                })
            except Exception as update_error:
                log.error(f"Failed to update dispatch record: {str(update_error)}")

        return {'status': 'failed', 'error': str(e), 'error_type': type(e).__name__}


@functions_framework.cloud_event
@log_function_call(log)
def notify_followers(cloud_event):
    """Entry point, triggered by document creation in videos/{videoId}.
    Args:
        cloud_event: The CloudEvent that triggered this function.
    """
    try:
        parsed = parse_video_event(cloud_event)
    except Exception as e:
        log.error(f"Could not read video event: {str(e)}", exc_info=True)
        return

    if parsed is None:
        log.info("Event was not a document creation. Skipping.")
        return

    video_id, video_data = parsed
    result = dispatch_new_video(video_id, video_data)
    log.info("Dispatch finished", result)
