#!/usr/bin/env python3
"""
Seed a restaurant with followers and post a video to fire notify_followers.

Followers are written in both shapes (restaurants/{id}/followers and
users/{id}.following) so the script works with either FOLLOWER_STRATEGY.

Usage:
  python seed_followers.py --project my-project --token <device-fcm-token>

Check the Cloud Functions logs of notify_followers afterwards.
"""
import argparse
import time
import uuid

import firebase_admin
from firebase_admin import credentials, firestore


def seed(db, restaurant_id, restaurant_name, tokens, followers_without_token):
    restaurant_ref = db.collection('restaurants').document(restaurant_id)
    restaurant_ref.set({'name': restaurant_name, 'created_at': firestore.SERVER_TIMESTAMP})

    user_ids = []
    for index, token in enumerate(tokens + [None] * followers_without_token):
        user_id = f"seed-{restaurant_id}-{index}"
        user = {
            'name': f"Seed follower {index}",
            'following': firestore.ArrayUnion([restaurant_id])
        }
        if token:
            user['fcmToken'] = token
        db.collection('users').document(user_id).set(user, merge=True)
        restaurant_ref.collection('followers').document(user_id).set({
            'followed_at': firestore.SERVER_TIMESTAMP
        })
        user_ids.append(user_id)

    print(f"Seeded {len(user_ids)} followers for restaurant {restaurant_id}")
    return user_ids


def post_video(db, restaurant_id, restaurant_name):
    video_id = f"seed-video-{uuid.uuid4().hex[:8]}"
    db.collection('videos').document(video_id).set({
        'restaurantId': restaurant_id,
        'restaurantName': restaurant_name,
        'created_at': firestore.SERVER_TIMESTAMP
    })
    print(f"Created video {video_id}")
    return video_id


def main():
    parser = argparse.ArgumentParser(description="Seed followers and post a video to test notify_followers")
    parser.add_argument("--project", required=True, help="Google Cloud project id")
    parser.add_argument("--database", default="(default)", help="Firestore database id")
    parser.add_argument("--restaurant-id", default="seed-restaurant", help="Restaurant to post under")
    parser.add_argument("--restaurant-name", default="Seed Diner", help="Restaurant display name")
    parser.add_argument("--token", action="append", default=[], help="FCM token of a test device (repeatable)")
    parser.add_argument("--without-token", type=int, default=1, help="Followers to create without a token")
    parser.add_argument("--wait", type=int, default=10, help="Seconds to wait for the dispatch record")

    args = parser.parse_args()

    app = firebase_admin.initialize_app(credentials.ApplicationDefault(), {'projectId': args.project})
    db = firestore.client(app=app, database_id=args.database)

    seed(db, args.restaurant_id, args.restaurant_name, args.token, args.without_token)
    video_id = post_video(db, args.restaurant_id, args.restaurant_name)

    # The trigger writes video_notifications/{videoId} when dedup is enabled
    time.sleep(args.wait)
    record = db.collection('video_notifications').document(video_id).get()
    if record.exists:
        print(f"Dispatch record: {record.to_dict()}")
    else:
        print("No dispatch record yet. Check the function logs.")


if __name__ == "__main__":
    main()
